"""Test fakes and factory helpers for provider testing."""

from tests.fakes.fake_provider import FakeProvider, make_successful_provider

__all__ = [
    "FakeProvider",
    "make_successful_provider",
]
