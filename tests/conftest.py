"""Shared test fixtures for OmniClaw."""

from __future__ import annotations

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "project_root",
        "groups_dir",
        "data_dir",
        "ipc_dir",
        "sessions_dir",
        "container_timeout",
        "idle_timeout",
        "startup_timeout",
        "timezone",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (container, opencode, etc.) and cached property
    overrides (project_root, data_dir, groups_dir, etc.).

    Usage::

        s = make_settings(data_dir=tmp_path)
        s = make_settings(container=ContainerConfig(max_output_size=100))
        s = make_settings(project_root=tmp_path, groups_dir=tmp_path / "groups")
    """
    from omniclaw.config import (
        AgentConfig,
        ContainerConfig,
        IntervalsConfig,
        LoggingConfig,
        OpenCodeConfig,
        SandboxConfig,
        Settings,
    )

    # Separate cached properties from model fields
    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "agent": AgentConfig(),
        "container": ContainerConfig(),
        "opencode": OpenCodeConfig(),
        "sandbox": SandboxConfig(),
        "intervals": IntervalsConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    # Directory layout follows project_root unless given explicitly
    if "project_root" in cached:
        root = cached["project_root"]
        cached.setdefault("groups_dir", root / "groups")
        cached.setdefault("data_dir", root / "data")
    if "data_dir" in cached:
        cached.setdefault("ipc_dir", cached["data_dir"] / "ipc")
        cached.setdefault("sessions_dir", cached["data_dir"] / "sessions")
    cached.setdefault("timezone", "UTC")

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults: no config.toml,
    no .env, no file I/O. Tests are fully isolated from production config.

    Tests that mock ``get_settings()`` at the call site are unaffected; their
    mock takes precedence over the cached singleton.
    """
    safe = make_settings()
    monkeypatch.setattr("omniclaw.config._settings", safe)


@pytest.fixture(autouse=True)
def _reset_backends():
    """Drop backends created through the registry between tests."""
    yield
    from omniclaw.backends import reset_backends

    reset_backends()
