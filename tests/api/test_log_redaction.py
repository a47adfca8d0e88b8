from core.logging_config import redact_sensitive


def test_top_level_token_is_masked():
    event = redact_sensitive(None, "info", {"event": "x", "token": "tok_1234567890"})
    assert event["token"] == "***7890"
    assert event["event"] == "x"


def test_nested_payment_method_is_masked():
    event = redact_sensitive(
        None,
        "info",
        {"event": "x", "payment_method": {"token": "abc", "paymethod_name": "VISA *0000"}},
    )
    assert event["payment_method"] == {"token": "***", "paymethod_name": "VISA *0000"}


def test_none_values_are_left_alone():
    event = redact_sensitive(None, "info", {"event": "x", "api_key": None})
    assert event["api_key"] is None
