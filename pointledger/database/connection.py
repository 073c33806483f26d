from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from pointledger.config import settings


def build_engine(database_url: str, debug: bool = False) -> Engine:
    """DB URL로 엔진 생성 (SQLite는 테스트/로컬 개발용)"""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=debug,
            # 스레드 간 세션 공유를 허용, 락 경합 시 5초 대기
            connect_args={"check_same_thread": False, "timeout": 5},
        )

    return create_engine(
        database_url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,  # 연결 유효성 검사
        pool_recycle=3600,  # 1시간마다 연결 재생성
        echo=debug,  # 디버그 모드에서 SQL 로깅
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    # Use expire_on_commit=False to avoid DetachedInstanceError when accessing
    # attributes after commit within the same request scope (common FastAPI pattern).
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False,
    )


engine = build_engine(settings.database_url, debug=settings.DEBUG)
SessionLocal = build_session_factory(engine)
