import logging

from selfservice.config import Settings, load_settings
from selfservice.log_setup import setup_logging
from selfservice.repositories.sqlalchemy import SqlalchemyIPAddressRepository
from selfservice.services.ip_pool_service import IPPoolService
from .database import Base, create_session_factory
from . import models  # noqa: F401  테이블 등록

logger = logging.getLogger(__name__)


def initialize_db(settings: Settings):
    """
    DB와 테이블을 생성하고, 설정된 범위로 IP 풀을 채웁니다.
    이미 풀에 있는 주소는 건너뛰므로 여러 번 실행해도 안전합니다.
    """
    engine, session_factory = create_session_factory(settings.database_url)

    # 모든 테이블을 생성합니다. (이미 존재하면 생성하지 않음)
    Base.metadata.create_all(bind=engine)
    logger.info("Tables created at %s", settings.database_url)

    pool = settings.ip_pool
    if not (pool.first and pool.last):
        logger.info("No IP pool range configured, skipping pool seeding")
        return engine, session_factory

    db = session_factory()
    try:
        ip_pool = IPPoolService(SqlalchemyIPAddressRepository(db))
        addresses = ip_pool.seed_range(pool.first, pool.last, pool.excluded)
        logger.info("IP pool %s - %s seeded with %d address(es)", pool.first, pool.last, len(addresses))
    finally:
        db.close()
    return engine, session_factory


def main():
    settings = load_settings()
    setup_logging(settings.log_file)
    initialize_db(settings)


if __name__ == '__main__':
    main()
