from __future__ import annotations

from models import Fault, FaultKind
from observable import FaultBus, SnapshotCell


def test_cell_notifies_only_on_change() -> None:
    cell: SnapshotCell[int] = SnapshotCell(0)
    seen: list[int] = []
    cell.subscribe(seen.append)

    assert cell.set(1) is True
    assert cell.set(1) is False
    cell.set(2)

    assert seen == [1, 2]
    assert cell.get() == 2


def test_unsubscribe_stops_notifications() -> None:
    cell: SnapshotCell[str] = SnapshotCell("a")
    seen: list[str] = []
    unsubscribe = cell.subscribe(seen.append)
    unsubscribe()
    cell.set("b")
    assert seen == []


def test_failing_observer_does_not_break_others() -> None:
    cell: SnapshotCell[int] = SnapshotCell(0)
    seen: list[int] = []

    def _broken(_value: int) -> None:
        raise RuntimeError("ui gone")

    cell.subscribe(_broken)
    cell.subscribe(seen.append)
    cell.set(5)
    assert seen == [5]


def test_fault_bus_keeps_bounded_history() -> None:
    bus = FaultBus(history=2)
    received: list[Fault] = []
    bus.subscribe(received.append)
    for i in range(3):
        bus.publish(Fault(kind=FaultKind.INFERENCE, code="X", reason=str(i)))

    assert [f.reason for f in received] == ["0", "1", "2"]
    assert [f.reason for f in bus.history()] == ["1", "2"]
