"""
데이터베이스 커넥션 풀 수명 주기 관리

엔진(커넥션 풀)은 프로세스 단위 자원입니다.
- 앱 시작 시 init_engine() 으로 생성
- 앱 종료 시 dispose_engine() 으로 정리 (대기 중인 커넥션 반환)
코어 로직은 엔진을 직접 참조하지 않고 세션 공급자(get_db / get_db_context)만 주입받습니다.
"""

import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marksapi.config import settings

logger = logging.getLogger(__name__)

# Use expire_on_commit=False to avoid DetachedInstanceError when accessing
# attributes after commit within the same request scope (common FastAPI pattern).
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)

_engine: Optional[Engine] = None


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # 테스트/로컬 전용. 인메모리 DB는 커넥션 하나를 공유해야 함
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=settings.DEBUG,
        )

    return create_engine(
        url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS,
        pool_pre_ping=True,  # 연결 유효성 검사
        pool_recycle=settings.DB_POOL_RECYCLE_SECONDS,
        echo=settings.DEBUG,  # 디버그 모드에서 SQL 로깅
        connect_args={"options": f"-csearch_path={settings.POSTGRES_SCHEMA}"},
    )


def init_engine(url: Optional[str] = None) -> Engine:
    """엔진을 생성하고 세션 팩토리에 바인딩 (이미 있으면 기존 엔진 반환)"""
    global _engine
    if _engine is not None:
        return _engine

    _engine = _build_engine(url or settings.database_url)
    SessionLocal.configure(bind=_engine)
    logger.info(f"Database engine initialized ({_engine.url.get_backend_name()})")
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Database engine is not initialized; call init_engine() first")
    return _engine


def dispose_engine() -> None:
    """커넥션 풀 정리 - 체크아웃된 커넥션은 반환 시점에 닫힘"""
    global _engine
    if _engine is None:
        return

    _engine.dispose()
    SessionLocal.configure(bind=None)
    _engine = None
    logger.info("Database engine disposed")
