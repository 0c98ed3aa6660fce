import json
import math
import random

import pytest

from caption_errors import ParseError
from caption_segments import (
    MIN_DURATION,
    CaptionSegment,
    SegmentStore,
    normalize_segments,
    parse_segments,
    parse_segments_json,
)


def _raw(start, end, primary="p", secondary="s"):
    return {"startTime": start, "endTime": end, "primaryText": primary, "secondaryText": secondary}


def _random_segments(rng, count):
    segments = []
    for idx in range(count):
        start = round(rng.uniform(0, 120), 3)
        end = round(start + rng.uniform(-3, 8), 3)
        segments.append(CaptionSegment(start, end, f"line {idx}", f"第{idx}行"))
    return segments


def test_overlapping_pair_is_trimmed():
    segments = normalize_segments(parse_segments([_raw(0, 2, "A", "甲"), _raw(1.5, 3, "B", "乙")]))

    assert segments == [
        CaptionSegment(0, 1.5, "A", "甲"),
        CaptionSegment(1.5, 3, "B", "乙"),
    ]


def test_zero_duration_is_stretched():
    segments = normalize_segments(parse_segments([_raw(5, 5, "X", "X")]))

    assert segments == [CaptionSegment(5, 6.5, "X", "X")]


def test_negative_duration_is_stretched():
    segments = normalize_segments([CaptionSegment(4.0, 3.0, "a", "b")])

    assert segments[0].end_time == pytest.approx(4.0 + MIN_DURATION)


def test_unordered_input_is_sorted_stably():
    segments = normalize_segments(
        [
            CaptionSegment(3.0, 4.0, "third", ""),
            CaptionSegment(1.0, 2.0, "first", ""),
            CaptionSegment(2.0, 3.0, "second", ""),
        ]
    )

    assert [seg.primary_text for seg in segments] == ["first", "second", "third"]


def test_equal_start_times_drop_the_collapsed_segment():
    segments = normalize_segments(
        [CaptionSegment(1.0, 3.0, "first", ""), CaptionSegment(1.0, 2.0, "later", "")]
    )

    # The first one is trimmed to zero length by the second and removed
    assert segments == [CaptionSegment(1.0, 2.0, "later", "")]


def test_normalization_invariants_hold_for_random_input():
    rng = random.Random(1234)
    for _ in range(200):
        segments = normalize_segments(_random_segments(rng, rng.randint(0, 25)))

        for seg in segments:
            assert seg.end_time > seg.start_time
        for current, nxt in zip(segments, segments[1:]):
            assert current.start_time <= nxt.start_time
            assert current.end_time <= nxt.start_time


def test_normalization_is_idempotent():
    rng = random.Random(99)
    for _ in range(100):
        once = normalize_segments(_random_segments(rng, rng.randint(0, 25)))
        twice = normalize_segments(once)

        assert twice == once
        assert json.dumps([s.to_dict() for s in twice]) == json.dumps([s.to_dict() for s in once])


@pytest.mark.parametrize(
    "raw, message",
    [
        ([{"startTime": 0, "endTime": 1, "primaryText": "a"}], "secondaryText"),
        ([_raw("0", 1)], "startTime"),
        ([_raw(0, True)], "endTime"),
        ([_raw(0, math.nan)], "finite"),
        ([_raw(-2, 1)], "must not be negative"),
        ([_raw(0, 1, primary=3)], "primaryText"),
        (["not an object"], "expected an object"),
        ("nope", "Expected a list"),
    ],
)
def test_parse_errors(raw, message):
    with pytest.raises(ParseError, match=message):
        parse_segments(raw)


def test_one_bad_entry_fails_the_whole_list():
    raw = [_raw(0, 1), _raw(1, 2), {"startTime": 2}]

    with pytest.raises(ParseError, match="Segment 2"):
        parse_segments(raw)


def test_parse_accepts_wrapped_list_and_json():
    wrapped = {"segments": [_raw(0, 1.25, "Hi", "嗨")]}

    assert parse_segments(wrapped) == [CaptionSegment(0.0, 1.25, "Hi", "嗨")]
    assert parse_segments_json(json.dumps(wrapped)) == parse_segments(wrapped)


def test_line_breaks_in_text_become_spaces():
    segments = parse_segments([_raw(0, 1, "line one\nline two", "第一\r\n第二\r")])

    assert segments == [CaptionSegment(0.0, 1.0, "line one line two", "第一 第二 ")]


def test_parse_invalid_json():
    with pytest.raises(ParseError, match="Invalid segment JSON"):
        parse_segments_json("[{")


def test_contains_is_half_open():
    seg = CaptionSegment(1.0, 2.0, "a", "b")

    assert seg.contains(1.0)
    assert seg.contains(1.999)
    assert not seg.contains(2.0)
    assert not seg.contains(0.999)


def test_store_replace_swaps_whole_generation():
    store = SegmentStore()
    before = store.snapshot()

    loaded = store.replace([_raw(2, 4, "B", "乙"), _raw(0, 3, "A", "甲")])

    assert before == ()
    assert store.generation == 1
    assert store.snapshot() is loaded
    assert [seg.primary_text for seg in store] == ["A", "B"]
    assert store.to_list()[0] == {"startTime": 0.0, "endTime": 2.0, "primaryText": "A", "secondaryText": "甲"}


def test_store_keeps_old_generation_on_parse_error():
    store = SegmentStore.from_raw([_raw(0, 1)])
    old = store.snapshot()

    with pytest.raises(ParseError):
        store.replace([_raw(0, 1), {"bad": True}])

    assert store.snapshot() is old
    assert store.generation == 0


def test_store_clear():
    store = SegmentStore.from_raw([_raw(0, 1)])

    store.clear()

    assert len(store) == 0
    assert store.generation == 1
