import logging

from .database import engine, Base
from . import models  # noqa: F401  (테이블 등록)

logger = logging.getLogger(__name__)


def initialize_db(bind=None):
    """
    VM 레코드 테이블을 생성합니다. (이미 존재하면 생성하지 않음)
    스키마 마이그레이션은 이 패키지의 범위 밖입니다.
    """
    bind = bind or engine
    logger.info("Initializing record store tables on %s", bind.url)
    Base.metadata.create_all(bind=bind)


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    initialize_db()
