import logging
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text

from marksapi.config import settings
from marksapi.database.connection import dispose_engine, init_engine
from marksapi.logging_config import setup_logging
from marksapi.models.base import Base
from marksapi.models import marks, user  # noqa: F401  테이블 등록

logger = logging.getLogger("marksapi.scripts.init_db")


def init_db():
    """데이터베이스 초기화 (스키마 + 테이블)"""
    engine = init_engine()
    try:
        if engine.dialect.name == "postgresql":
            with engine.connect() as conn:
                conn.execute(
                    text(f"CREATE SCHEMA IF NOT EXISTS {settings.POSTGRES_SCHEMA}")
                )
                conn.commit()

        Base.metadata.create_all(bind=engine)
        logger.info(
            f"Database initialized successfully with schema: {settings.POSTGRES_SCHEMA}"
        )
    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}")
        raise
    finally:
        dispose_engine()


if __name__ == "__main__":
    setup_logging(settings.LOG_LEVEL)
    init_db()
