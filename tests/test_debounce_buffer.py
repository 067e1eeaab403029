import pytest

from garage_door_controller import DebounceBuffer, DoorState


OPEN = DoorState.OPEN
CLOSED = DoorState.CLOSED
STOPPED = DoorState.STOPPED


def fill(values, capacity=4):
    buffer = DebounceBuffer(capacity=capacity)
    for v in values:
        buffer.push(v)
    return buffer


def test_three_of_four_is_a_prediction():
    assert fill([OPEN, OPEN, OPEN, CLOSED]).predict() == OPEN


def test_even_split_is_no_prediction():
    assert fill([OPEN, OPEN, CLOSED, CLOSED]).predict() is None


def test_empty_buffer_has_no_prediction():
    assert DebounceBuffer().predict() is None


def test_threshold_uses_current_length_not_capacity():
    # One reading is 100% of a partially filled buffer
    assert fill([STOPPED]).predict() == STOPPED
    # 2 of 3 is below 75%
    assert fill([CLOSED, STOPPED, STOPPED]).predict() is None
    assert fill([CLOSED, STOPPED]).predict() is None


def test_oldest_reading_is_evicted():
    buffer = fill([CLOSED, CLOSED, OPEN, OPEN, OPEN])
    assert len(buffer) == 4
    assert list(buffer) == [CLOSED, OPEN, OPEN, OPEN]
    assert buffer.predict() == OPEN


def test_length_never_exceeds_capacity():
    buffer = DebounceBuffer(capacity=4)
    for i in range(20):
        buffer.push(OPEN if i % 2 else STOPPED)
        assert len(buffer) <= 4


def test_single_glitch_does_not_flip_prediction():
    buffer = fill([CLOSED, CLOSED, CLOSED, CLOSED])
    buffer.push(STOPPED)
    assert buffer.predict() == CLOSED
    buffer.push(CLOSED)
    assert buffer.predict() == CLOSED


def test_three_way_split_has_no_prediction():
    assert fill([OPEN, CLOSED, STOPPED, OPEN]).predict() is None


def test_clear_and_invalid_capacity():
    buffer = fill([OPEN, OPEN])
    buffer.clear()
    assert len(buffer) == 0
    assert buffer.predict() is None
    with pytest.raises(ValueError):
        DebounceBuffer(capacity=0)
