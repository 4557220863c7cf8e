"""Shared fixtures for dispatcher tests."""

import random

import pytest


@pytest.fixture
def seeded_latency():
    """Deterministic pseudo-random latencies so completion order differs from dispatch order."""
    rng = random.Random(1234)
    latencies = {}

    def _latency(index: int) -> float:
        if index not in latencies:
            latencies[index] = rng.uniform(0.0, 0.01)
        return latencies[index]

    return _latency


@pytest.fixture
def app_config(tmp_path):
    """Write a config file that keeps logs and run summaries inside tmp_path."""

    def _write(api_host="http://localhost:3000/", **dispatch):
        dispatch_cfg = {
            "concurrency_limit": 3,
            "batch_size": 3,
            "total_requests": 6,
            "cooldown_ms": 0,
            **dispatch,
        }
        lines = ["dispatch:"]
        lines += [f"  {key}: {value}" for key, value in dispatch_cfg.items()]
        lines += [
            "transport:",
            f"  api_host: {api_host or ''}",
            "  path: api",
            "  timeout_seconds: 5",
            "logging:",
            "  level: INFO",
            f"  log_dir: {tmp_path / 'logs'}",
            "  log_to_file: false",
            "run_summary:",
            "  enabled: true",
            f"  base_dir: {tmp_path / 'runs'}",
        ]
        path = tmp_path / "config.yaml"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write
