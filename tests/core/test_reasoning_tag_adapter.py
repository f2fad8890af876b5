from core.llm.adapters import ReasoningTagAdapter
from core.llm.types import ReasoningDelta, TextDelta


def _split(parts):
    text = "".join(p.delta for p in parts if isinstance(p, TextDelta))
    reasoning = "".join(p.delta for p in parts if isinstance(p, ReasoningDelta))
    return text, reasoning


def test_single_chunk_split():
    ad = ReasoningTagAdapter()
    parts = ad.feed("<thinking>2+2 is 4</thinking>The answer is 4.")
    parts += ad.flush()
    assert _split(parts) == ("The answer is 4.", "2+2 is 4")


def test_tags_straddling_chunks():
    ad = ReasoningTagAdapter("thinking")
    chunks = ["<thi", "nking>step", " one</thin", "king>Fin", "al"]
    parts = []
    for c in chunks:
        parts += ad.feed(c)
    parts += ad.flush()
    assert _split(parts) == ("Final", "step one")
    # no tag fragment ever leaks into text
    assert all("<" not in p.delta for p in parts)


def test_plain_text_passes_through_and_partial_lt_released():
    ad = ReasoningTagAdapter()
    out = ad.feed("a < b and c <")
    assert _split(out)[0] == "a < b and c "
    out = ad.feed("= d")
    assert _split(out)[0] == "<= d"
    assert not ad.inside_reasoning


def test_unterminated_reasoning_flushes_as_reasoning():
    ad = ReasoningTagAdapter()
    parts = ad.feed("<thinking>never closed")
    parts += ad.flush()
    assert _split(parts) == ("", "never closed")
