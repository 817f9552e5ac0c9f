import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from sandbox_vm.config import Settings
from sandbox_vm.database import models
from sandbox_vm.repositories.interfaces import IVMRepository
from sandbox_vm.services.runtime_driver import ComposeRuntimeDriver
from sandbox_vm.utils import descriptor_generator, endpoint_allocator
from sandbox_vm.utils.descriptor_generator import INSTANCE_PREFIX, instance_name
from sandbox_vm.utils.keyed_lock import KeyedLock
from sandbox_vm.services.exceptions import (
    EndpointSpaceExhaustedError,
    InconsistentStateError,
    QuotaExceededError,
    RuntimeDriverError,
    ValidationError,
    VmNotFoundOrUnauthorizedError,
)

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 64

OrphanHook = Callable[[int, str, Exception], None]


class ComputeService:
    """
    VM 레코드와 런타임 인스턴스의 수명주기를 관리하는 오케스트레이터.

    VM마다 Absent -> Stopped <-> Running -> Absent 상태 기계를 따릅니다.
    같은 VM에 대한 작업, 그리고 같은 사용자의 생성 작업은 잠금으로 직렬화되고
    나머지는 병렬로 진행됩니다. 상태의 기준은 레코드 저장소 하나뿐이며
    프로세스 메모리에 상태를 캐시하지 않습니다.
    """

    def __init__(self, vm_repo: IVMRepository, driver: ComposeRuntimeDriver, settings: Settings,
                 orphan_hook: Optional[OrphanHook] = None):
        """
        ComputeService를 초기화합니다.

        Args:
            vm_repo: VM 레코드 저장소.
            driver: 컨테이너 런타임 드라이버.
            settings: 쿼터, 디스크립터 디렉터리 등 설정.
            orphan_hook: 삭제 후 런타임 정리에 실패한 인스턴스를 넘겨받을 콜백 (선택).
        """
        self.vm_repo = vm_repo
        self.driver = driver
        self.settings = settings
        self.quota = settings.vm_quota
        self.orphan_hook = orphan_hook
        self._locks = KeyedLock()

    async def create_vm(self, owner_id: int, name: Any) -> Dict[str, Any]:
        """
        새 VM 레코드와 중지 상태의 런타임 인스턴스를 생성합니다.

        레코드 삽입 -> 엔드포인트 계산 -> 디스크립터 작성 -> 런타임 생성 순서로 진행하며,
        디스크립터 작성이나 런타임 생성이 실패하면 방금 넣은 레코드와 디스크립터를
        지우고 원래 오류를 다시 발생시킵니다.

        Args:
            owner_id: VM을 소유할 사용자의 ID.
            name: 사용자가 붙이는 VM 이름.

        Returns:
            생성된 VM 정보 딕셔너리 (status는 항상 'stopped').

        Raises:
            ValidationError: 이름이 비었거나 너무 길 때.
            QuotaExceededError: 사용자가 이미 쿼터만큼 VM을 가지고 있을 때.
            VmNotFoundOrUnauthorizedError: 생성 도중 같은 VM이 삭제되었을 때.
            EndpointSpaceExhaustedError: 플랫폼의 포트 범위를 모두 썼을 때.
            DescriptorWriteError: 디스크립터 파일을 쓰지 못했을 때.
            RuntimeDriverError: 런타임 생성이 실패했을 때.
        """
        name = self._validate_name(name)

        # 쿼터 확인, 삽입, 런타임 생성을 하나의 임계 구역으로 묶습니다.
        async with self._locks.hold(("owner", owner_id)):
            count = await asyncio.to_thread(self.vm_repo.count_by_owner, owner_id)
            if count >= self.quota:
                raise QuotaExceededError(f"Maximum limit of {self.quota} VMs reached.")

            vm_id = await asyncio.to_thread(self.vm_repo.insert, owner_id, name)

            async with self._locks.hold(("vm", vm_id)):
                # 삽입 직후 잠금을 잡기 전에 같은 VM의 삭제가 먼저 끝났을 수 있습니다.
                vm = await asyncio.to_thread(self.vm_repo.get, vm_id)
                if vm is None:
                    logger.warning("VM %s was deleted before its runtime instance was created", vm_id)
                    descriptor_generator.remove(vm_id, self.settings.config_dir)
                    raise VmNotFoundOrUnauthorizedError(f"VM {vm_id} was deleted during creation.")

                runtime_invoked = False
                try:
                    try:
                        endpoints = endpoint_allocator.allocate(vm_id)
                    except ValueError as e:
                        raise EndpointSpaceExhaustedError(str(e)) from e
                    descriptor = descriptor_generator.render(vm_id, name, endpoints, self.settings)
                    path = descriptor_generator.write(vm_id, descriptor, self.settings.config_dir)
                    runtime_invoked = True
                    await self.driver.create(vm_id, path)
                except Exception as e:
                    logger.error("VM %s creation failed: %s. Starting rollback...", vm_id, e)
                    await self._rollback_vm_creation(vm_id, runtime_invoked)
                    raise

        logger.info("VM %s (%r) created for owner %s", vm_id, name, owner_id)
        return self._to_view(vm)

    async def _rollback_vm_creation(self, vm_id: int, runtime_invoked: bool):
        await asyncio.to_thread(self.vm_repo.delete, vm_id)
        if runtime_invoked:
            try:
                await self.driver.destroy(vm_id)
            except RuntimeDriverError as e:
                logger.warning("Rollback Warning: failed to clean up runtime instance %s: %s",
                               instance_name(vm_id), e)
        try:
            descriptor_generator.remove(vm_id, self.settings.config_dir)
        except OSError as e:
            logger.warning("Rollback Warning: failed to remove descriptor for VM %s: %s", vm_id, e)

    async def list_vms(self, owner_id: int) -> List[Dict[str, Any]]:
        """
        사용자의 VM 목록을 엔드포인트 정보와 함께 반환합니다.
        상태는 레코드 저장소의 값을 그대로 사용합니다.
        """
        vms = await asyncio.to_thread(self.vm_repo.list_by_owner, owner_id)
        return [self._to_view(vm) for vm in vms]

    async def get_vm(self, vm_id: int, owner_id: int) -> Dict[str, Any]:
        vm = await self._get_owned(vm_id, owner_id)
        return self._to_view(vm)

    async def set_status(self, vm_id: int, owner_id: int, target: Any) -> Dict[str, Any]:
        """
        VM을 시작하거나 중지합니다.

        현재 상태와 목표 상태가 같으면 런타임을 호출하지 않습니다. 런타임 호출이
        성공했을 때만 레코드의 상태를 갱신하며, 실패하면 레코드는 그대로 두고
        오류를 전달합니다.

        Args:
            vm_id: 대상 VM의 ID.
            owner_id: 요청한 사용자의 ID.
            target: 'running' 또는 'stopped'.

        Returns:
            갱신된 VM 정보 딕셔너리.

        Raises:
            ValidationError: target 값이 올바르지 않을 때.
            VmNotFoundOrUnauthorizedError: VM이 없거나 요청자의 VM이 아닐 때.
            InconsistentStateError: 레코드는 있는데 디스크립터가 없을 때.
            RuntimeDriverError: 런타임 시작/중지가 실패했을 때.
        """
        if target not in models.VM_STATUSES:
            raise ValidationError("Valid status (running/stopped) is required.")

        async with self._locks.hold(("vm", vm_id)):
            vm = await self._get_owned(vm_id, owner_id)
            if vm.status == target:
                return self._to_view(vm)

            path = descriptor_generator.descriptor_path(vm_id, self.settings.config_dir)
            if not path.exists():
                logger.error("Inconsistent state: VM %s is recorded as %s but descriptor %s is missing",
                             vm_id, vm.status, path)
                raise InconsistentStateError(f"VM {vm_id} has no descriptor; manual repair required.")

            if target == models.VM_STATUS_RUNNING:
                await self.driver.start(vm_id)
            else:
                await self.driver.stop(vm_id)

            await asyncio.to_thread(self.vm_repo.update_status, vm_id, target)
            vm.status = target

        logger.info("VM %s is now %s", vm_id, target)
        return self._to_view(vm)

    async def delete_vm(self, vm_id: int, owner_id: int) -> None:
        """
        VM 레코드를 먼저 삭제한 뒤 런타임 인스턴스를 제거합니다.

        레코드와 런타임 삭제는 원자적이지 않습니다. 레코드 삭제 후 런타임 제거가
        실패하면 인스턴스가 고아로 남으며, 이를 인스턴스 이름과 함께 ERROR로
        기록하고 orphan_hook에 넘깁니다. 사용자에게 보이는 상태는 이미 바뀌었으므로
        호출은 성공으로 끝납니다.

        Raises:
            VmNotFoundOrUnauthorizedError: VM이 없거나 요청자의 VM이 아닐 때.
        """
        async with self._locks.hold(("vm", vm_id)):
            await self._get_owned(vm_id, owner_id)
            await asyncio.to_thread(self.vm_repo.delete, vm_id)
            logger.info("Record for VM %s deleted (owner %s)", vm_id, owner_id)

            try:
                await self.driver.destroy(vm_id)
            except RuntimeDriverError as e:
                logger.error("Orphaned runtime instance: vm_id=%s instance=%s error=%s",
                             vm_id, instance_name(vm_id), e)
                if self.orphan_hook is not None:
                    self.orphan_hook(vm_id, instance_name(vm_id), e)

    async def find_orphans(self) -> List[Dict[str, Any]]:
        """
        런타임에는 있지만 레코드가 없는 인스턴스(고아)를 찾아냅니다.
        자동으로 정리하지는 않으며, 수동 정리나 주기적 점검에 사용합니다.
        """
        names = await self.driver.list_instances()
        known_ids = set(await asyncio.to_thread(self.vm_repo.list_all_ids))

        orphans = []
        for name in names:
            suffix = name[len(INSTANCE_PREFIX):]
            if not suffix.isdigit():
                continue
            if int(suffix) not in known_ids:
                orphans.append({"vm_id": int(suffix), "instance": name})
        return orphans

    async def _get_owned(self, vm_id: int, owner_id: int) -> models.VM:
        vm = await asyncio.to_thread(self.vm_repo.get, vm_id)
        if vm is None or vm.owner_id != owner_id:
            raise VmNotFoundOrUnauthorizedError(f"VM {vm_id} not found or unauthorized access.")
        return vm

    @staticmethod
    def _validate_name(name: Any) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("VM name is required.")
        name = name.strip()
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"VM name must be at most {MAX_NAME_LENGTH} characters.")
        return name

    def _to_view(self, vm: models.VM) -> Dict[str, Any]:
        endpoints = endpoint_allocator.allocate(vm.id)
        return {
            "id": vm.id,
            "owner_id": vm.owner_id,
            "name": vm.name,
            "status": vm.status,
            "created_at": vm.created_at.isoformat() if vm.created_at else None,
            "display_port": endpoints.display_port,
            "control_port": endpoints.control_port,
            "connection_url": endpoint_allocator.connection_url(self.settings.public_host, vm.id),
        }
