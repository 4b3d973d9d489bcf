import pytest

from renewals.classifier import ReplyIntent, classify_reply


@pytest.mark.parametrize(
    "body,expected",
    [
        ("Yeah", ReplyIntent.YES),
        ("nope", ReplyIntent.NO),
        ("what else do I have", ReplyIntent.HELP),
        ("maybe", ReplyIntent.UNKNOWN),
    ],
)
def test_reference_replies(body, expected):
    assert classify_reply(body) == expected


def test_whole_message_vocabulary_is_case_and_space_insensitive():
    assert classify_reply("  YES ") == ReplyIntent.YES
    assert classify_reply("Y") == ReplyIntent.YES
    assert classify_reply("ok!") == ReplyIntent.YES
    assert classify_reply("N.") == ReplyIntent.NO
    assert classify_reply("Nah") == ReplyIntent.NO


@pytest.mark.parametrize(
    "body",
    [
        "I'm not sure",
        "not ok",
        "no problem, keep it up",
        "yes please extend",
        "no, it's rented",
    ],
)
def test_keyword_inside_a_sentence_is_not_an_answer(body):
    assert classify_reply(body) == ReplyIntent.UNKNOWN


def test_conflicting_keywords_are_unknown():
    assert classify_reply("yes no") == ReplyIntent.UNKNOWN


def test_help_markers():
    assert classify_reply("?") == ReplyIntent.HELP
    assert classify_reply("show me") == ReplyIntent.HELP
    assert classify_reply("which other ones") == ReplyIntent.HELP
    assert classify_reply("HELP") == ReplyIntent.HELP


def test_help_substring_wins_over_keyword():
    # "listing" contains "list"
    assert classify_reply("yes the listing is available") == ReplyIntent.HELP


def test_blank_is_unknown():
    assert classify_reply("") == ReplyIntent.UNKNOWN
    assert classify_reply(None) == ReplyIntent.UNKNOWN
    assert classify_reply("   ") == ReplyIntent.UNKNOWN
