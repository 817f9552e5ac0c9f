# tests/conftest.py
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from sandbox_vm.config import Settings
from sandbox_vm.database.database import Base
from sandbox_vm.repositories.sqlalchemy.sqlalchemy_vm_repository import SqlalchemyVMRepository


@pytest.fixture
def settings(tmp_path) -> Settings:
    """임시 디렉터리를 디스크립터 디렉터리로 쓰는 테스트용 설정."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        config_dir=tmp_path / "vm-configs",
        build_context=tmp_path / "build",
        image="sandbox-vm-image:test",
        runtime_timeout=5.0,
        build_timeout=5.0,
        public_host="sandbox.example.com",
    )


@pytest.fixture
def session_factory(settings: Settings):
    """테스트마다 새 SQLite 파일 DB를 만들고 테이블을 생성합니다."""
    engine = create_engine(settings.database_url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def vm_repo(session_factory) -> SqlalchemyVMRepository:
    return SqlalchemyVMRepository(session_factory)
