from core.compare.wire import Delta
from modelcompare.api.sse import encode_event, format_event


def test_encoded_event_is_one_data_line():
    frame = encode_event(Delta("r1", "alpha", "a\u2028b\x85c\u2029\nd"))
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert frame[:-2].count("\n") == 0
    assert "a\u2028b\x85c\u2029\\nd" in frame


def test_format_event_splits_only_on_cr_lf():
    assert format_event("x", "a\r\nb\rc\nd\u2028e") == (
        "event: x\ndata: a\ndata: b\ndata: c\ndata: d\u2028e\n\n"
    )
    assert format_event(None, "") == "data: \n\n"
