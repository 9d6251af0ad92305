from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

import hotkey as hotkey_mod
from hotkey import GlobalHotkeyAdapter


class _FakeListener:
    def __init__(self, on_press: Any, on_release: Any) -> None:
        self.on_press = on_press
        self.on_release = on_release
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True


class _Key:
    def __init__(self, name: str) -> None:
        self._name = name

    def __str__(self) -> str:
        return self._name


@pytest.fixture
def listeners(monkeypatch: Any) -> list[_FakeListener]:
    created: list[_FakeListener] = []

    def _factory(on_press: Any, on_release: Any) -> _FakeListener:
        listener = _FakeListener(on_press, on_release)
        created.append(listener)
        return listener

    monkeypatch.setattr(hotkey_mod, "keyboard", SimpleNamespace(Listener=_factory))
    return created


def test_toggle_fires_once_per_press(listeners: list[_FakeListener]) -> None:
    toggles: list[int] = []
    adapter = GlobalHotkeyAdapter(hotkey_name="Key.alt_r")
    adapter.start(on_toggle=lambda: toggles.append(1))
    listener = listeners[0]
    assert listener.started

    key = _Key("Key.alt_r")
    listener.on_press(key)
    listener.on_press(key)  # auto-repeat
    listener.on_release(key)
    listener.on_press(key)

    assert len(toggles) == 2


def test_other_keys_are_ignored(listeners: list[_FakeListener]) -> None:
    toggles: list[int] = []
    GlobalHotkeyAdapter(hotkey_name="Key.alt_r").start(on_toggle=lambda: toggles.append(1))

    listeners[0].on_press(_Key("Key.shift"))
    assert toggles == []


def test_stop_stops_listener(listeners: list[_FakeListener]) -> None:
    adapter = GlobalHotkeyAdapter()
    adapter.start(on_toggle=lambda: None)
    adapter.stop()
    adapter.stop()
    assert listeners[0].stopped


def test_start_without_pynput(monkeypatch: Any) -> None:
    monkeypatch.setattr(hotkey_mod, "keyboard", None)
    with pytest.raises(RuntimeError, match="pynput is not installed"):
        GlobalHotkeyAdapter().start(on_toggle=lambda: None)


def test_start_twice_keeps_one_listener(listeners: list[_FakeListener]) -> None:
    adapter = GlobalHotkeyAdapter()
    adapter.start(on_toggle=lambda: None)
    adapter.start(on_toggle=lambda: None)

    assert len(listeners) == 1
    assert adapter.listening
    adapter.stop()
    assert not adapter.listening
