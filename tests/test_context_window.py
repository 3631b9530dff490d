"""Tests for chatloom.services.context_window."""

import random

import pytest

from chatloom.services.context_window import ContextWindowSegmenter, gaps_in_seconds, open_tail_cut

from fakes import make_message


def unit_segmenter():
    return ContextWindowSegmenter(size_fn=lambda message: 1)


class TestSegment:

    def test_cuts_at_four_hour_gap(self):
        messages = [
            make_message(1, 0),
            make_message(2, 1),
            make_message(3, 2),
            make_message(4, 4 * 3600),
            make_message(5, 4 * 3600 + 1),
        ]
        selected, gap = unit_segmenter().segment(messages, 4)

        assert [m.message_id for m in selected] == [1, 2, 3]
        assert gap == pytest.approx(4 * 3600 - 2)

    def test_everything_fits(self):
        messages = [make_message(i, i) for i in range(1, 6)]
        selected, gap = unit_segmenter().segment(messages, 10)

        assert len(selected) == 5
        assert gap == 0.0

    def test_empty_backlog(self):
        assert unit_segmenter().segment([], 10) == ([], 0.0)

    def test_ties_cut_at_earliest_gap(self):
        # Equal 10 minute pauses after messages 2 and 4
        messages = [
            make_message(1, 0),
            make_message(2, 1),
            make_message(3, 601),
            make_message(4, 602),
            make_message(5, 1202),
        ]
        selected, _ = unit_segmenter().segment(messages, 4)

        assert [m.message_id for m in selected] == [1, 2]

    def test_gap_floor_forces_hard_cut(self):
        messages = [make_message(i, i) for i in range(1, 6)]
        selected, _ = unit_segmenter().segment(messages, 2, min_gap_floor=60)

        assert [m.message_id for m in selected] == [1, 2]

    def test_oversized_first_message_is_kept(self):
        segmenter = ContextWindowSegmenter(size_fn=lambda message: 100 if message.message_id == 1 else 1)
        messages = [make_message(1, 0), make_message(2, 3600), make_message(3, 7200)]

        selected, _ = segmenter.segment(messages, 10)

        assert [m.message_id for m in selected] == [1]

    def test_default_size_is_token_estimate(self):
        segmenter = ContextWindowSegmenter(chars_per_token=4.0)
        assert segmenter.estimate_tokens(make_message(1, 0, text='x' * 40)) == 11

    @pytest.mark.parametrize('seed', range(20))
    def test_prefix_stays_within_budget_plus_one_message(self, seed):
        rng = random.Random(seed)
        seconds = 0
        messages = []
        for i in range(1, rng.randint(2, 60)):
            seconds += rng.choice([1, 5, 30, 600, 7200])
            messages.append(make_message(i, seconds, text='w' * rng.randint(1, 400)))
        segmenter = ContextWindowSegmenter()
        budget = rng.randint(1, 2000)

        selected, _ = segmenter.segment(messages, budget)

        assert selected
        assert selected == messages[:len(selected)]
        sizes = [segmenter.estimate_tokens(m) for m in selected]
        assert sum(sizes) <= budget + max(sizes)


class TestRecentWindow:

    def test_selects_newest_chunk_oldest_first(self):
        messages = [
            make_message(1, 0),
            make_message(2, 1),
            make_message(3, 4 * 3600),
            make_message(4, 4 * 3600 + 1),
            make_message(5, 4 * 3600 + 2),
        ]
        window = unit_segmenter().recent_window(messages, 4)

        assert [m.message_id for m in window] == [3, 4, 5]


class TestOpenTailCut:

    def test_drops_trailing_conversation(self):
        messages = [
            make_message(1, 0),
            make_message(2, 1),
            make_message(3, 2),
            make_message(4, 3 * 3600),
            make_message(5, 3 * 3600 + 1),
        ]
        assert [m.message_id for m in open_tail_cut(messages, 100)] == [1, 2, 3]

    def test_only_looks_at_tail_window(self):
        messages = [make_message(1, 0), make_message(2, 86400), make_message(3, 86401), make_message(4, 86460)]
        assert [m.message_id for m in open_tail_cut(messages, 2)] == [1, 2, 3]

    def test_too_few_messages(self):
        assert open_tail_cut([make_message(1, 0)], 100) == []
        assert open_tail_cut([], 100) == []


def test_gaps_in_seconds():
    messages = [make_message(1, 0), make_message(2, 10), make_message(3, 70)]
    assert gaps_in_seconds(messages) == [0.0, 10.0, 60.0]
