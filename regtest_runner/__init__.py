"""Orchestration for Rust integration tests that run against a live bitcoind."""

__version__ = "0.1.0"
