from abc import ABC
from contextlib import contextmanager
from typing import Any, Generic, Iterator, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy.orm import Session

T = TypeVar("T")
SchemaType = TypeVar("SchemaType", bound=BaseModel)


class BaseRepository(Generic[T, SchemaType], ABC):
    """모든 리포지토리의 베이스 클래스 - Pydantic 응답 보장"""

    def __init__(
        self, model_class: Type[T], schema_class: Type[SchemaType], db: Session
    ):
        self.model_class = model_class
        self.schema_class = schema_class
        self.db = db

    def _to_schema(self, model_instance: Any) -> Optional[SchemaType]:
        """SQLAlchemy 모델을 Pydantic 스키마로 변환"""
        if model_instance is None:
            return None
        return self.schema_class.model_validate(model_instance)

    def _ensure_clean_session(self) -> None:
        """이전 요청/작업이 남긴 트랜잭션을 정리하여 새 트랜잭션에서 시작하도록 함"""
        if not self.db.is_active or self.db.in_transaction():
            self.db.rollback()

    @contextmanager
    def _atomic(self) -> Iterator[Session]:
        """
        하나의 원자적 작업 단위

        블록이 정상 종료되면 커밋, 예외가 나면 롤백 후 예외를 그대로 전파합니다.
        블록 안에서 잡은 행 잠금(SELECT ... FOR UPDATE)은 커밋/롤백 시점까지 유지됩니다.
        """
        self._ensure_clean_session()
        try:
            yield self.db
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def get_by_id(self, id: Any) -> Optional[SchemaType]:
        """ID로 조회 - Pydantic 스키마 반환"""
        model_instance = (
            self.db.query(self.model_class)
            .filter(getattr(self.model_class, "id") == id)
            .first()
        )
        return self._to_schema(model_instance)
