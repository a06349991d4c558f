"""Helpers for reading the machine dashboard returned by the cloud API."""

from __future__ import annotations

from lmbridge._constants import MODE_BREWING, MODE_STANDBY, STATUS_WIDGET_CODE

_POWER_BY_MODE: dict[str, bool] = {
    MODE_BREWING: True,
    MODE_STANDBY: False,
}


def find_widget(snapshot: object, code: str) -> dict[str, object] | None:
    """Return the first dashboard widget with the given *code*, or ``None``."""
    if not isinstance(snapshot, dict):
        return None
    widgets = snapshot.get("widgets")
    if not isinstance(widgets, list):
        return None
    for widget in widgets:
        if isinstance(widget, dict) and widget.get("code") == code:
            return widget
    return None


def extract_power_from_dashboard(snapshot: object) -> bool | None:
    """Map a dashboard to the machine's power state.

    ``True`` when the status widget reports ``BrewingMode``, ``False`` for
    ``StandBy`` and ``None`` when the state cannot be determined.
    """
    widget = find_widget(snapshot, STATUS_WIDGET_CODE)
    if widget is None:
        return None
    output = widget.get("output")
    if not isinstance(output, dict):
        return None
    mode = output.get("mode")
    if not isinstance(mode, str):
        return None
    return _POWER_BY_MODE.get(mode)


def power_mode(enabled: bool) -> str:
    """The ``mode`` value that switches the machine on or off."""
    return MODE_BREWING if enabled else MODE_STANDBY


def format_power(power: bool | None) -> str:
    """Human-readable power state."""
    if power is None:
        return "unknown"
    return "ON" if power else "OFF"
