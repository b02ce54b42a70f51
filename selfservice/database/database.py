from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

# 모든 모델 클래스가 상속받을 Base 클래스
# 이 클래스를 상속받아 모델을 정의하면, SQLAlchemy가 테이블을 인식합니다.
Base = declarative_base()


def _use_immediate_transactions(engine):
    """
    SQLite에서 트랜잭션을 BEGIN IMMEDIATE로 시작하게 합니다.

    기본(deferred) 트랜잭션은 동시에 쓰기로 승격하려는 연결이 대기 없이 바로
    'database is locked'로 실패할 수 있습니다. IMMEDIATE는 시작 시점에 쓰기 잠금을
    잡으므로 다른 연결은 busy timeout 동안 기다립니다.
    """
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(database_url: str):
    """
    데이터베이스 URL로 엔진과 세션 팩토리를 생성합니다.

    connect_args는 SQLite에서만 필요합니다. (thread-safe 설정)
    autocommit=False, autoflush=False로 설정하여, 명시적으로 commit을 호출해야 DB에 반영됩니다.

    Returns:
        (engine, SessionLocal) 튜플.
    """
    is_sqlite = database_url.startswith("sqlite")
    connect_args = {"check_same_thread": False, "timeout": 30} if is_sqlite else {}
    engine = create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)
    if is_sqlite:
        _use_immediate_transactions(engine)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return engine, session_factory
