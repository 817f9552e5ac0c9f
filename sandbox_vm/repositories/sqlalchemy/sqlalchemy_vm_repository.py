from typing import List, Optional
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker
from sandbox_vm.database import models
from sandbox_vm.repositories.interfaces import IVMRepository


class SqlalchemyVMRepository(IVMRepository):
    """
    호출마다 새 세션을 열어 하나의 트랜잭션으로 처리하는 VM 저장소.
    오케스트레이터가 작업 스레드에서 호출하므로 세션을 공유하지 않습니다.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def insert(self, owner_id: int, name: str) -> int:
        with self.session_factory() as db:
            vm = models.VM(owner_id=owner_id, name=name, status=models.VM_STATUS_STOPPED)
            db.add(vm)
            db.commit()
            db.refresh(vm)
            return vm.id

    def get(self, vm_id: int) -> Optional[models.VM]:
        with self.session_factory(expire_on_commit=False) as db:
            return db.get(models.VM, vm_id)

    def list_by_owner(self, owner_id: int) -> List[models.VM]:
        with self.session_factory(expire_on_commit=False) as db:
            stmt = select(models.VM).where(models.VM.owner_id == owner_id).order_by(models.VM.id)
            return list(db.scalars(stmt).all())

    def count_by_owner(self, owner_id: int) -> int:
        with self.session_factory() as db:
            stmt = select(func.count(models.VM.id)).where(models.VM.owner_id == owner_id)
            return db.scalar(stmt) or 0

    def update_status(self, vm_id: int, status: str) -> None:
        with self.session_factory() as db:
            vm = db.get(models.VM, vm_id)
            if vm is None:
                return
            vm.status = status
            db.commit()

    def delete(self, vm_id: int) -> None:
        with self.session_factory() as db:
            vm = db.get(models.VM, vm_id)
            if vm is not None:
                db.delete(vm)
                db.commit()

    def list_all_ids(self) -> List[int]:
        with self.session_factory() as db:
            return [row[0] for row in db.execute(select(models.VM.id)).all()]
