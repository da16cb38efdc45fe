import asyncio

import pytest

from waker.config import WakerConfig
from waker.executor import ProcessExecutor, ProcessResult


class FakeExecutor(ProcessExecutor):
    """Records resume invocations instead of spawning processes."""

    def __init__(self):
        self.calls = []
        self.result = ProcessResult(exit_code=0, stdout="", stderr="")
        self.delay = 0.0

    async def run(self, command, env, timeout_seconds):
        self.calls.append({"command": command, "env": env, "timeout": timeout_seconds})
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.result


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def write_project(tmp_path):
    """Write <tmp>/projects/<name>.conf with the given KEY="VALUE" pairs."""
    projects_dir = tmp_path / "projects"
    projects_dir.mkdir(exist_ok=True)

    def _write(name, port=None, **values):
        lines = [f'PROJECT_NAME="{name}"']
        if port is not None:
            lines.append(f'PROJECT_PORT="{port}"')
        lines.extend(f'{key}="{value}"' for key, value in values.items())
        path = projects_dir / f"{name}.conf"
        path.write_text("\n".join(lines) + "\n")
        return path

    return _write


@pytest.fixture
def waker_config(tmp_path):
    """Config pointing at the temporary project store, with fast probing."""
    return WakerConfig(
        pet_dir=str(tmp_path / "pet-cli"),
        pet_config_dir=str(tmp_path),
        wake_command=["pet-wake"],
        wake_timeout_seconds=5,
        grace_period_seconds=5,
        probe_max_attempts=3,
        probe_attempt_timeout_ms=200,
        probe_retry_delay_ms=0,
        max_body_bytes=1024,
    )
