from listing_relay.jobs.errors import classify_error_message, classify_exception, error_category


def test_validation_messages_are_classified_first() -> None:
    assert classify_error_message("Validation failed: timeout must be positive") == (
        "validation_error:Validation failed: timeout must be positive"
    )


def test_network_patterns_are_upstream_errors() -> None:
    for message in ("request timeout", "ECONNREFUSED 10.0.0.1:443", "getaddrinfo ENOTFOUND api", "Network unreachable"):
        assert classify_error_message(message).startswith("upstream_error:")


def test_other_messages_default_to_scrape_error() -> None:
    assert classify_error_message("unexpected markup") == "scrape_error:unexpected markup"
    assert classify_error_message("") == "scrape_error:unknown_error"


def test_already_classified_messages_pass_through() -> None:
    assert classify_error_message("upstream_error:429 from source") == "upstream_error:429 from source"


def test_classify_exception_uses_type_name_for_empty_message() -> None:
    assert classify_exception(KeyError()) == "scrape_error:KeyError"
    assert classify_exception(TimeoutError("read timed out")) == "upstream_error:read timed out"


def test_error_category() -> None:
    assert error_category("validation_error:bad input") == "validation_error"
