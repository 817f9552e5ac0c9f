from abc import ABC, abstractmethod
from typing import List, Optional
from sandbox_vm.database import models


class IVMRepository(ABC):
    """
    VM 레코드 저장소 계약.
    각 메서드는 하나의 행에 대해 서로 원자적으로 동작해야 합니다.
    """

    @abstractmethod
    def insert(self, owner_id: int, name: str) -> int:
        """stopped 상태의 새 VM 레코드를 저장하고 할당된 id를 반환합니다."""
        pass

    @abstractmethod
    def get(self, vm_id: int) -> Optional[models.VM]:
        """id로 VM 레코드를 조회합니다. 없으면 None."""
        pass

    @abstractmethod
    def list_by_owner(self, owner_id: int) -> List[models.VM]:
        """특정 사용자가 소유한 모든 VM의 목록을 조회합니다."""
        pass

    @abstractmethod
    def count_by_owner(self, owner_id: int) -> int:
        """특정 사용자가 소유한 VM의 개수를 조회합니다."""
        pass

    @abstractmethod
    def update_status(self, vm_id: int, status: str) -> None:
        """VM의 상태를 갱신합니다."""
        pass

    @abstractmethod
    def delete(self, vm_id: int) -> None:
        """VM 레코드를 삭제합니다. 이미 없으면 아무 일도 하지 않습니다."""
        pass

    @abstractmethod
    def list_all_ids(self) -> List[int]:
        """저장소에 있는 모든 VM의 id 목록을 조회합니다."""
        pass
