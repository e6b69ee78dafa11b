"""Pytest configuration and fixtures for all tests."""

import pytest

from cmdguard.core.config import PRESET_ENV_VAR
from cmdguard.core.policy import PolicyConfig, build_policy
from cmdguard.core.presets import PermissionPreset


@pytest.fixture(autouse=True)
def isolate_preset_env(monkeypatch):
    """Keep a preset exported in the developer's shell out of the tests."""
    monkeypatch.delenv(PRESET_ENV_VAR, raising=False)


@pytest.fixture
def readonly_policy() -> PolicyConfig:
    return build_policy(PermissionPreset.READONLY)


@pytest.fixture
def dev_policy() -> PolicyConfig:
    return build_policy(PermissionPreset.DEV)


@pytest.fixture
def full_policy() -> PolicyConfig:
    return build_policy(PermissionPreset.FULL)
