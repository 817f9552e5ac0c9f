from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from sandbox_vm.config import get_settings


def make_engine(database_url: str):
    """
    주어진 URL로 SQLAlchemy 엔진을 생성합니다.

    SQLite는 요청 스레드와 이벤트 루프 작업 스레드가 같은 연결을 쓰므로
    check_same_thread를 꺼 둡니다.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)


# 데이터베이스 연결 문자열은 설정(SANDBOX_DATABASE_URL)에서 읽어옵니다.
engine = make_engine(get_settings().database_url)

# autocommit=False, autoflush=False: 명시적으로 commit을 호출해야 DB에 반영됩니다.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# 모든 모델 클래스가 상속받을 Base 클래스
Base = declarative_base()
