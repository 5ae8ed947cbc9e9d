"""
Domain exception → HTTPException

detail 統一是 {"code": 類別名稱, "message": 說明}
"""
from typing import Callable, TypeVar
import logging

from fastapi import HTTPException
from sqlalchemy.exc import OperationalError

from core.exceptions import RoundEngineError, TransientError, TransientStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def to_http(exc: RoundEngineError) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code,
        detail={"code": exc.code, "message": str(exc)},
    )


def read_with_retry(fn: Callable[[], T]) -> T:
    """
    讀取路徑遇到 Transient 錯誤重試一次；寫入路徑不要用

    資料庫的 OperationalError（database is locked、連線中斷）視為 TransientStore，
    重試仍失敗就以 503 回給呼叫端
    """
    try:
        return fn()
    except (TransientError, OperationalError) as e:
        logger.warning(f"Transient read failure, retrying once: {e}")
    try:
        return fn()
    except OperationalError as e:
        raise TransientStore("Store temporarily unavailable") from e
