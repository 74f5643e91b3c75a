from __future__ import annotations

import json

from services.webinar_live.app.payloads import (
    CtaPopupPayload,
    KeywordReplyPayload,
    OfferBannerPayload,
    TimedMessagePayload,
    parse_payload,
    serialize_content,
)


def test_cta_defaults_fill_missing_fields():
    payload = parse_payload("CTA_POPUP", json.dumps({"description": "Only today"}))

    assert isinstance(payload, CtaPopupPayload)
    assert payload.to_event() == {
        "type": "CTA_POPUP",
        "title": "Special Offer",
        "description": "Only today",
        "buttonText": "Learn More",
        "buttonUrl": "#",
        "duration": 30,
    }


def test_banner_defaults():
    payload = parse_payload("OFFER_BANNER", "{}")

    assert isinstance(payload, OfferBannerPayload)
    assert payload.to_event()["text"] == "Limited Time Offer!"
    assert payload.to_event()["backgroundColor"] == "#6366f1"
    assert payload.duration == 60


def test_timed_message_reads_camel_case_content():
    payload = parse_payload("TIMED_MESSAGE", json.dumps({"senderName": "Coach", "message": "Welcome!"}))

    assert payload == TimedMessagePayload(sender_name="Coach", message="Welcome!")


def test_malformed_content_falls_back_to_plain_text():
    payload = parse_payload("TIMED_MESSAGE", "Hello everyone {")

    assert isinstance(payload, TimedMessagePayload)
    assert payload.message == "Hello everyone {"
    assert payload.sender_name == "Webinar Bot"


def test_invalid_cta_values_fall_back_to_text():
    raw = json.dumps({"title": "Deal", "duration": 0})

    payload = parse_payload("CTA_POPUP", raw)

    assert isinstance(payload, TimedMessagePayload)
    assert payload.message == raw


def test_keyword_rule_without_keyword_never_matches():
    assert not parse_payload("KEYWORD_REPLY", "not json").matches("anything")
    assert not parse_payload("KEYWORD_REPLY", json.dumps({"replyMessage": "hi"})).matches("hi")


def test_keyword_match_is_case_insensitive_substring():
    rule = parse_payload("KEYWORD_REPLY", json.dumps({"keyword": "Price", "replyMessage": "$99"}))

    assert isinstance(rule, KeywordReplyPayload)
    assert rule.matches("what's the PRICE?")
    assert not rule.matches("when does it start?")
    assert rule.as_reply() == TimedMessagePayload(sender_name="Webinar Bot", message="$99")


def test_serialize_content_applies_defaults():
    stored = serialize_content("CTA_POPUP", {"buttonUrl": "https://example.com/buy"})

    assert json.loads(stored) == {
        "title": "Special Offer",
        "description": "",
        "buttonText": "Learn More",
        "buttonUrl": "https://example.com/buy",
        "duration": 30,
    }
