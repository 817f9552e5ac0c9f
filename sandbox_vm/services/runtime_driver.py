import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from sandbox_vm.config import Settings
from sandbox_vm.utils import descriptor_generator
from sandbox_vm.utils.descriptor_generator import INSTANCE_PREFIX, instance_name
from sandbox_vm.services.exceptions import (
    BuildFailedError,
    RuntimeDriverError,
    RuntimeNotFoundError,
    RuntimeTimeoutError,
    RuntimeUnavailableError,
    RuntimeUnknownError,
)

logger = logging.getLogger(__name__)

# stderr 문구로 실패 종류를 분류합니다. (소문자 비교)
_UNAVAILABLE_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
    "permission denied while trying to connect",
)
_BUILD_MARKERS = (
    "failed to solve",
    "failed to build",
    "failed to compute cache key",
    "error building",
    "build failed",
)
_NOT_FOUND_MARKERS = (
    "no such container",
    "no such service",
    "no container to start",
    "no containers to start",
    "no configuration file provided",
    "not found",
)


@dataclass(frozen=True)
class RuntimeHandle:
    vm_id: int
    instance_name: str
    descriptor_path: Path


class ComposeRuntimeDriver:
    """
    docker compose CLI로 VM별 런타임 인스턴스를 생성/시작/중지/삭제합니다.

    호출 하나가 외부 명령 하나(또는 짧은 고정 순서)에 대응하며, 모든 명령은
    제한 시간을 가집니다. 드라이버는 내부 잠금이 없으므로 같은 VM에 대한 호출은
    호출자가 직렬화해야 합니다. 레코드 저장소는 읽지 않습니다.
    """

    def __init__(self, settings: Settings):
        self.docker_bin = settings.docker_bin
        self.config_dir = Path(settings.config_dir)
        self.timeout = settings.runtime_timeout
        self.build_timeout = settings.build_timeout

    async def create(self, vm_id: int, descriptor_path: Path) -> RuntimeHandle:
        """
        필요하면 이미지를 빌드하고 서비스를 중지 상태로 생성합니다. 절대 시작하지 않습니다.

        Raises:
            RuntimeNotFoundError: 디스크립터 파일이 없을 때.
            BuildFailedError: 이미지 빌드가 실패했을 때.
            RuntimeDriverError: 그 밖의 런타임 실패.
        """
        descriptor_path = Path(descriptor_path)
        if not descriptor_path.exists():
            raise RuntimeNotFoundError(vm_id, "create", f"descriptor {descriptor_path} does not exist")
        await self._compose(vm_id, "create", descriptor_path, ["up", "--no-start", "--build"],
                            timeout=self.build_timeout)
        return RuntimeHandle(vm_id, instance_name(vm_id), descriptor_path)

    async def start(self, vm_id: int) -> None:
        """중지된 서비스를 실행 상태로 전환합니다."""
        path = self._existing_descriptor(vm_id)
        if path is None:
            raise RuntimeNotFoundError(vm_id, "start", "no descriptor for this VM")
        await self._compose(vm_id, "start", path, ["start"])

    async def stop(self, vm_id: int) -> None:
        """
        실행 중인 서비스를 중지합니다. 인스턴스는 보존됩니다.
        이미 중지되었거나 인스턴스가 없으면 경고만 남기고 성공합니다.
        """
        path = self._existing_descriptor(vm_id)
        if path is None:
            logger.warning("Runtime stop for VM %s: no descriptor, nothing to stop", vm_id)
            return
        try:
            await self._compose(vm_id, "stop", path, ["stop"])
        except RuntimeNotFoundError as e:
            logger.warning("Runtime stop for VM %s: instance not found, treating as stopped (%s)", vm_id, e.stderr.strip())

    async def destroy(self, vm_id: int) -> None:
        """
        서비스를 중지하고 인스턴스와 런타임 볼륨을 제거한 뒤 디스크립터 파일을 삭제합니다.
        존재하지 않는 서비스에 대한 호출은 경고만 남기고 성공합니다.
        """
        path = self._existing_descriptor(vm_id)
        try:
            await self._compose(vm_id, "destroy", path, ["down", "--volumes", "--remove-orphans"])
        except RuntimeNotFoundError as e:
            logger.warning("Runtime destroy for VM %s: instance %s not found (%s)",
                           vm_id, instance_name(vm_id), e.stderr.strip())
        try:
            descriptor_generator.remove(vm_id, self.config_dir)
        except OSError as e:
            raise RuntimeUnknownError(vm_id, "destroy", f"could not remove descriptor: {e}") from e

    async def list_instances(self) -> List[str]:
        """런타임에 존재하는 sandbox-vm-* 인스턴스 이름 목록 (중지된 것 포함)."""
        stdout = await self._run(None, "list", [self.docker_bin, "compose", "ls", "--all", "--format", "json"],
                                 timeout=self.timeout)
        try:
            projects = json.loads(stdout or "[]")
        except json.JSONDecodeError as e:
            raise RuntimeUnknownError(None, "list", f"unparseable output: {e}", stdout) from e
        names = [p.get("Name", "") for p in projects]
        return sorted(n for n in names if n.startswith(INSTANCE_PREFIX))

    def _existing_descriptor(self, vm_id: int) -> Optional[Path]:
        path = descriptor_generator.descriptor_path(vm_id, self.config_dir)
        return path if path.exists() else None

    async def _compose(self, vm_id: int, operation: str, path: Optional[Path], args: List[str],
                       timeout: Optional[float] = None) -> str:
        command = [self.docker_bin, "compose", "-p", instance_name(vm_id)]
        if path is not None:
            command += ["-f", str(path)]
        return await self._run(vm_id, operation, command + args, timeout=timeout or self.timeout)

    async def _run(self, vm_id, operation: str, command: List[str], timeout: float) -> str:
        logger.info("Runtime %s for VM %s: %s", operation, vm_id, " ".join(command))
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise RuntimeUnavailableError(vm_id, operation, f"'{self.docker_bin}' command not found")
        except OSError as e:
            raise RuntimeUnavailableError(vm_id, operation, str(e))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise RuntimeTimeoutError(vm_id, operation, f"no result within {timeout:g}s")
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            error = self._classify(vm_id, operation, proc.returncode, err)
            logger.warning("Runtime %s for VM %s failed with %s: %s", operation, vm_id, error.kind, err.strip())
            raise error
        logger.debug("Runtime %s for VM %s succeeded", operation, vm_id)
        return out

    @staticmethod
    async def _kill(proc):
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    @staticmethod
    def _classify(vm_id, operation: str, returncode: int, stderr: str) -> RuntimeDriverError:
        text = stderr.lower()
        detail = f"exit status {returncode}"
        if any(m in text for m in _UNAVAILABLE_MARKERS):
            return RuntimeUnavailableError(vm_id, operation, detail, stderr)
        if operation == "create" and any(m in text for m in _BUILD_MARKERS):
            return BuildFailedError(vm_id, operation, detail, stderr)
        if any(m in text for m in _NOT_FOUND_MARKERS):
            return RuntimeNotFoundError(vm_id, operation, detail, stderr)
        return RuntimeUnknownError(vm_id, operation, detail, stderr)
