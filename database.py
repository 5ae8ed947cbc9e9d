from sqlalchemy import create_engine, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from functools import wraps
import logging

from config import get_settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str):
    """
    建立 Engine

    SQLite 需要特殊設定：
    - check_same_thread=False：FastAPI threadpool 與 scheduler thread 共用連線池
    - timeout：寫鎖衝突時等待，而不是立刻丟 "database is locked"
    """
    is_sqlite = database_url.startswith("sqlite")
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": 30} if is_sqlite else {},
        pool_pre_ping=True
    )

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def build_session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


settings = get_settings()
engine = build_engine(settings.database_url)
Base = declarative_base()


def insert_ignore(db: Session, model, values: dict) -> int:
    """
    INSERT ... ON CONFLICT DO NOTHING

    用於「不存在才建立」的冪等寫入（例如 create_if_missing）。
    Unique key 衝突時不丟例外，直接回傳 0。

    返回：
        實際插入的列數（0 或 1）
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values).on_conflict_do_nothing()
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values).on_conflict_do_nothing()
    else:
        raise NotImplementedError(f"insert_ignore is not supported on {dialect}")
    result = db.execute(stmt)
    return result.rowcount or 0


def transactional(func):
    """
    Transaction decorator：確保資料庫操作的原子性

    使用方式：
        @transactional
        def place(self, db: Session, ...):
            # 所有 DB 操作都在一個 transaction 內
            db.add(slip)
            # 不需要手動 commit，decorator 會處理

    如果函式內發生異常：
        - 自動 rollback
        - 異常會被重新拋出（讓上層處理）

    注意：
        - 參數中必須有一個 Session（位置參數或 db=...）
        - 不要在函式內手動 commit（decorator 會處理）
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        # 找出 db session（staticmethod 在 args[0]，instance method 在 args[1]）
        db = kwargs.get('db')
        if db is None:
            db = next((arg for arg in args if isinstance(arg, Session)), None)

        if db is None:
            raise ValueError(
                f"@transactional requires a 'db: Session' argument, "
                f"but got args={args}, kwargs={kwargs}"
            )

        try:
            result = func(*args, **kwargs)
            db.commit()
            return result
        except Exception as e:
            logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            db.rollback()
            raise

    return wrapper
