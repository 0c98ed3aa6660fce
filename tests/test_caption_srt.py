import random

import pytest

from caption_errors import ParseError
from caption_segments import CaptionSegment, normalize_segments, parse_segments
from caption_srt import format_srt_timestamp, parse_srt, srt_filename_for, write_srt


@pytest.mark.parametrize(
    "seconds, expected",
    [
        (0, "00:00:00,000"),
        (1.5, "00:00:01,500"),
        (61.25, "00:01:01,250"),
        (3661.007, "01:01:01,007"),
        (36000, "10:00:00,000"),
    ],
)
def test_format_srt_timestamp(seconds, expected):
    assert format_srt_timestamp(seconds) == expected


def test_write_srt_entry_layout():
    text = write_srt(
        [
            CaptionSegment(0, 1.5, "A", "甲"),
            CaptionSegment(1.5, 3, "B", "乙"),
        ]
    )

    assert text == (
        "1\n00:00:00,000 --> 00:00:01,500\nA\n甲\n\n"
        "2\n00:00:01,500 --> 00:00:03,000\nB\n乙\n\n"
    )


def test_round_trip_within_a_millisecond():
    rng = random.Random(7)
    raw = []
    for idx in range(60):
        start = rng.uniform(0, 5000)
        raw.append(CaptionSegment(start, start + rng.uniform(0.2, 6), f"Line {idx}", f"第{idx}句"))
    segments = normalize_segments(raw)

    parsed = parse_srt(write_srt(segments))

    assert len(parsed) == len(segments)
    for original, back in zip(segments, parsed):
        assert back.start_time == pytest.approx(original.start_time, abs=0.001)
        assert back.end_time == pytest.approx(original.end_time, abs=0.001)
        assert back.primary_text == original.primary_text
        assert back.secondary_text == original.secondary_text


def test_multi_line_text_survives_the_round_trip():
    segments = normalize_segments(
        parse_segments(
            [
                {"startTime": 0, "endTime": 1, "primaryText": "line one\nline two", "secondaryText": "甲"},
                {"startTime": 1, "endTime": 2, "primaryText": "B", "secondaryText": "乙\r\n丙"},
            ]
        )
    )

    parsed = parse_srt(write_srt(segments))

    assert parsed == segments
    assert parsed[0].primary_text == "line one line two"


def test_parse_tolerates_bom_and_crlf():
    text = "\ufeff1\r\n00:00:01,000 --> 00:00:02,500\r\nHello\r\n你好\r\n\r\n"

    assert parse_srt(text) == [CaptionSegment(1.0, 2.5, "Hello", "你好")]


def test_parse_rejects_bad_timing_line():
    with pytest.raises(ParseError, match="malformed timing"):
        parse_srt("1\n00:00:01 --> 00:00:02\nHello\n你好\n")


def test_parse_rejects_truncated_entry():
    with pytest.raises(ParseError, match="truncated"):
        parse_srt("1\n00:00:01,000 --> 00:00:02,000\n")


@pytest.mark.parametrize(
    "source_name, expected",
    [
        ("talk.mp4", "talk.srt"),
        ("/videos/My Clip.final.mov", "My Clip.final.srt"),
        (None, "subtitles.srt"),
        ("", "subtitles.srt"),
    ],
)
def test_srt_filename_for(source_name, expected):
    assert srt_filename_for(source_name) == expected
