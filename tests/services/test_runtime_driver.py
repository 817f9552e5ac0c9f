# tests/services/test_runtime_driver.py
import asyncio
import dataclasses
import json
from unittest.mock import AsyncMock, patch

import pytest

from sandbox_vm.services.runtime_driver import ComposeRuntimeDriver, RuntimeHandle
from sandbox_vm.services.exceptions import (
    BuildFailedError,
    RuntimeNotFoundError,
    RuntimeTimeoutError,
    RuntimeUnavailableError,
    RuntimeUnknownError,
)
from sandbox_vm.utils import descriptor_generator

# ===================================================================
#  테스트를 위한 가짜 객체 및 Fixture 설정
# ===================================================================

class FakeProcess:
    """asyncio.subprocess.Process를 흉내 내는 가짜 클래스."""
    def __init__(self, returncode=0, stdout=b"", stderr=b"", delay=0.0):
        self._result = returncode
        self._stdout = stdout
        self._stderr = stderr
        self._delay = delay
        self.returncode = None
        self.killed = False

    async def communicate(self):
        if self._delay:
            await asyncio.sleep(self._delay)
        self.returncode = self._result
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


@pytest.fixture
def fake_exec():
    """create_subprocess_exec를 모킹하여 실제 docker 명령이 실행되지 않도록 합니다."""
    with patch("sandbox_vm.services.runtime_driver.asyncio.create_subprocess_exec",
               new_callable=AsyncMock) as mock_exec:
        mock_exec.return_value = FakeProcess()
        yield mock_exec


@pytest.fixture
def driver(settings) -> ComposeRuntimeDriver:
    return ComposeRuntimeDriver(settings)


@pytest.fixture
def descriptor(settings):
    """VM 3번의 디스크립터 파일을 미리 만들어 둡니다."""
    return descriptor_generator.write(3, b"services: {}\n", settings.config_dir)


def command_of(mock_exec):
    return list(mock_exec.call_args.args)

# ===================================================================
#  create 테스트 스위트
# ===================================================================
class TestCreate:
    @pytest.mark.asyncio
    async def test_create_builds_and_instantiates_without_starting(self, driver, fake_exec, descriptor):
        handle = await driver.create(3, descriptor)

        assert handle == RuntimeHandle(3, "sandbox-vm-3", descriptor)
        assert command_of(fake_exec) == [
            "docker", "compose", "-p", "sandbox-vm-3", "-f", str(descriptor),
            "up", "--no-start", "--build",
        ]

    @pytest.mark.asyncio
    async def test_create_requires_descriptor(self, driver, fake_exec, settings):
        with pytest.raises(RuntimeNotFoundError):
            await driver.create(3, descriptor_generator.descriptor_path(3, settings.config_dir))
        fake_exec.assert_not_called()

    @pytest.mark.asyncio
    async def test_build_failure_is_classified_with_stderr(self, driver, fake_exec, descriptor):
        stderr = b"failed to solve: process \"/bin/sh -c apt-get install\" did not complete"
        fake_exec.return_value = FakeProcess(returncode=1, stderr=stderr)

        with pytest.raises(BuildFailedError) as exc_info:
            await driver.create(3, descriptor)

        assert exc_info.value.kind == "BuildFailed"
        assert exc_info.value.operation == "create"
        assert exc_info.value.stderr == stderr.decode()

    @pytest.mark.asyncio
    async def test_unreachable_daemon(self, driver, fake_exec, descriptor):
        fake_exec.return_value = FakeProcess(
            returncode=1,
            stderr=b"Cannot connect to the Docker daemon at unix:///var/run/docker.sock. Is the docker daemon running?",
        )

        with pytest.raises(RuntimeUnavailableError):
            await driver.create(3, descriptor)

    @pytest.mark.asyncio
    async def test_missing_cli_is_runtime_unavailable(self, driver, fake_exec, descriptor):
        fake_exec.side_effect = FileNotFoundError("docker")

        with pytest.raises(RuntimeUnavailableError):
            await driver.create(3, descriptor)

    @pytest.mark.asyncio
    async def test_unrecognized_failure_keeps_stderr_verbatim(self, driver, fake_exec, descriptor):
        fake_exec.return_value = FakeProcess(returncode=2, stderr=b"something odd happened\n")

        with pytest.raises(RuntimeUnknownError) as exc_info:
            await driver.create(3, descriptor)
        assert exc_info.value.stderr == "something odd happened\n"

# ===================================================================
#  timeout 테스트
# ===================================================================
@pytest.mark.asyncio
async def test_timeout_kills_process_and_is_not_success(settings, fake_exec, descriptor):
    """제한 시간을 넘긴 명령은 강제 종료되고 Timeout 오류가 되어야 합니다."""
    # === Arrange ===
    driver = ComposeRuntimeDriver(dataclasses.replace(settings, runtime_timeout=0.01))
    proc = FakeProcess(delay=1.0)
    fake_exec.return_value = proc

    # === Act & Assert ===
    with pytest.raises(RuntimeTimeoutError) as exc_info:
        await driver.start(3)
    assert proc.killed
    assert exc_info.value.operation == "start"

# ===================================================================
#  start / stop 테스트 스위트
# ===================================================================
class TestStartStop:
    @pytest.mark.asyncio
    async def test_start(self, driver, fake_exec, descriptor):
        await driver.start(3)

        assert command_of(fake_exec)[-1] == "start"
        assert "sandbox-vm-3" in command_of(fake_exec)

    @pytest.mark.asyncio
    async def test_start_without_descriptor_is_not_found(self, driver, fake_exec):
        with pytest.raises(RuntimeNotFoundError):
            await driver.start(3)
        fake_exec.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_without_instance_is_not_found(self, driver, fake_exec, descriptor):
        fake_exec.return_value = FakeProcess(returncode=1, stderr=b'service "desktop" has no container to start')

        with pytest.raises(RuntimeNotFoundError):
            await driver.start(3)

    @pytest.mark.asyncio
    async def test_stop_missing_instance_is_benign(self, driver, fake_exec, descriptor):
        fake_exec.return_value = FakeProcess(returncode=1, stderr=b"Error: No such container: sandbox-vm-3")

        await driver.stop(3)

    @pytest.mark.asyncio
    async def test_stop_without_descriptor_is_benign(self, driver, fake_exec):
        await driver.stop(3)
        fake_exec.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_other_failures_propagate(self, driver, fake_exec, descriptor):
        fake_exec.return_value = FakeProcess(returncode=1, stderr=b"context deadline exceeded")

        with pytest.raises(RuntimeUnknownError):
            await driver.stop(3)

# ===================================================================
#  destroy 테스트 스위트
# ===================================================================
class TestDestroy:
    @pytest.mark.asyncio
    async def test_destroy_removes_instance_volumes_and_descriptor(self, driver, fake_exec, descriptor):
        await driver.destroy(3)

        assert command_of(fake_exec) == [
            "docker", "compose", "-p", "sandbox-vm-3", "-f", str(descriptor),
            "down", "--volumes", "--remove-orphans",
        ]
        assert not descriptor.exists()

    @pytest.mark.asyncio
    async def test_destroy_without_descriptor_still_tears_down_by_name(self, driver, fake_exec):
        await driver.destroy(3)

        assert command_of(fake_exec) == [
            "docker", "compose", "-p", "sandbox-vm-3", "down", "--volumes", "--remove-orphans",
        ]

    @pytest.mark.asyncio
    async def test_destroy_missing_instance_is_benign(self, driver, fake_exec, descriptor):
        fake_exec.return_value = FakeProcess(returncode=1, stderr=b"no such service: desktop")

        await driver.destroy(3)

        assert not descriptor.exists()

    @pytest.mark.asyncio
    async def test_destroy_failure_keeps_descriptor_for_retry(self, driver, fake_exec, descriptor):
        fake_exec.return_value = FakeProcess(returncode=1, stderr=b"error during connect: daemon gone")

        with pytest.raises(RuntimeUnavailableError):
            await driver.destroy(3)
        assert descriptor.exists()

# ===================================================================
#  list_instances 테스트
# ===================================================================
@pytest.mark.asyncio
async def test_list_instances_filters_sandbox_projects(driver, fake_exec):
    projects = [
        {"Name": "sandbox-vm-2", "Status": "exited(1)"},
        {"Name": "unrelated", "Status": "running(1)"},
        {"Name": "sandbox-vm-10", "Status": "running(1)"},
    ]
    fake_exec.return_value = FakeProcess(stdout=json.dumps(projects).encode())

    assert await driver.list_instances() == ["sandbox-vm-10", "sandbox-vm-2"]
    assert command_of(fake_exec) == ["docker", "compose", "ls", "--all", "--format", "json"]

@pytest.mark.asyncio
async def test_destroy_descriptor_removal_failure_is_classified(driver, fake_exec, descriptor):
    """디스크립터 삭제가 권한 문제로 실패하면 분류된 런타임 오류로 전달해야 합니다."""
    with patch("sandbox_vm.services.runtime_driver.descriptor_generator.remove",
               side_effect=PermissionError("read-only config dir")):
        with pytest.raises(RuntimeUnknownError) as exc_info:
            await driver.destroy(3)

    assert exc_info.value.operation == "destroy"
    assert isinstance(exc_info.value.__cause__, PermissionError)
