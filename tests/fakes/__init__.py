"""Test fake implementations for dependency injection testing."""

from tests.fakes.fake_runner import FakeProcessRunner

__all__ = ["FakeProcessRunner"]
