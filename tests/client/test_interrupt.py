"""Tests for interrupt bookkeeping and the content reveal."""

from __future__ import annotations

from mirastream.client.interrupt import PENALTY, ContentReveal, InterruptController

# ---------------------------------------------------------------------------
# ContentReveal
# ---------------------------------------------------------------------------


def test_reveal_advances_through_appended_text() -> None:
    reveal = ContentReveal()
    reveal.append("Hello ")
    reveal.append("there")

    assert reveal.advance(3) == "Hel"
    assert reveal.visible == "Hel"
    assert reveal.pending == 8
    assert reveal.reveal_all() == "lo there"
    assert reveal.advance(5) == ""


def test_freeze_truncates_at_revealed_boundary() -> None:
    reveal = ContentReveal()
    reveal.append("The abyss stares back.")
    reveal.advance(9)

    assert reveal.freeze() == "The abyss"
    assert reveal.frozen
    assert reveal.append(" More.") is False
    assert reveal.advance(10) == ""
    assert reveal.visible == "The abyss"
    assert reveal.pending == 0


# ---------------------------------------------------------------------------
# Stream ordinals and blocking
# ---------------------------------------------------------------------------


def test_stream_ordinals_start_at_one() -> None:
    controller = InterruptController()
    assert controller.start_stream() == 1
    assert controller.start_stream() == 2
    assert controller.current_stream == 2


def test_interrupt_applies_penalty_once() -> None:
    seen: list[int] = []
    controller = InterruptController(50, on_confidence=seen.append)
    sid = controller.start_stream()

    outcome = controller.interrupt()

    assert outcome is not None
    assert outcome.stream_id == sid
    assert outcome.previous_confidence == 50
    assert outcome.confidence == 50 - PENALTY
    assert controller.interrupt() is None
    assert controller.confidence == 50 - PENALTY
    assert seen == [50 - PENALTY]


def test_penalty_is_clamped_at_zero() -> None:
    controller = InterruptController(10)
    controller.start_stream()
    controller.interrupt()
    assert controller.confidence == 0


def test_interrupt_without_stream_is_noop() -> None:
    controller = InterruptController()
    assert controller.interrupt() is None
    assert controller.confidence == 50


def test_finished_stream_cannot_be_interrupted() -> None:
    controller = InterruptController(confidence=62)
    sid = controller.start_stream()
    controller.end_stream(sid)

    assert controller.current_stream is None
    assert controller.interrupt() is None
    assert controller.confidence == 62


def test_ending_a_superseded_stream_keeps_the_current_one() -> None:
    controller = InterruptController()
    first = controller.start_stream()
    second = controller.start_stream()
    controller.end_stream(first)

    assert controller.current_stream == second
    assert controller.interrupt() is not None


def test_interrupt_freezes_the_streams_reveal() -> None:
    controller = InterruptController()
    sid = controller.start_stream()
    reveal = controller.reveal_for(sid)
    reveal.append("Half of this")
    reveal.advance(4)

    outcome = controller.interrupt()

    assert outcome is not None
    assert outcome.visible_text == "Half"
    assert reveal.frozen


def test_late_confidence_from_interrupted_stream_is_ignored() -> None:
    """A success callback racing the interrupt must not erase the penalty."""
    controller = InterruptController(50)
    sid = controller.start_stream()
    controller.interrupt()

    assert controller.apply_confidence(sid, 80) is False
    assert controller.confidence == 35


def test_interrupted_stream_stays_blocked_for_one_more_cycle() -> None:
    controller = InterruptController(50)
    first = controller.start_stream()
    controller.interrupt()

    second = controller.start_stream()
    assert controller.should_block(first)
    assert not controller.should_block(second)
    assert controller.apply_confidence(first, 90) is False
    assert controller.apply_confidence(second, 60) is True
    assert controller.confidence == 60

    controller.start_stream()
    assert not controller.should_block(first)


def test_interrupting_one_stream_does_not_block_the_next() -> None:
    controller = InterruptController(50)
    controller.start_stream()
    controller.interrupt()

    second = controller.start_stream()
    assert controller.interrupted_stream is None
    outcome = controller.interrupt()
    assert outcome is not None
    assert outcome.stream_id == second
    assert controller.confidence == 20


def test_apply_confidence_clamps() -> None:
    controller = InterruptController()
    sid = controller.start_stream()
    controller.apply_confidence(sid, 140)
    assert controller.confidence == 100
