from sqlalchemy import Column, Integer, String, DateTime, func
from ..database import Base

VM_STATUS_STOPPED = "stopped"
VM_STATUS_RUNNING = "running"
VM_STATUSES = (VM_STATUS_STOPPED, VM_STATUS_RUNNING)


class VM(Base):
    """
    사용자가 생성하고 관리하는 샌드박스 VM(컨테이너 기반 데스크톱 세션)을 나타냅니다.
    id로부터 런타임 인스턴스 이름과 원격 접속 포트가 결정되므로 id는 생성 후 바뀌지 않습니다.
    status는 마지막으로 *성공한* 런타임 전이를 기록합니다.
    """
    __tablename__ = "virtual_machines"
    __table_args__ = {"sqlite_autoincrement": True}
    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    name = Column(String(64), nullable=False)
    status = Column(String, nullable=False, default=VM_STATUS_STOPPED)
    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<VM id={self.id} owner_id={self.owner_id} name={self.name!r} status={self.status}>"
