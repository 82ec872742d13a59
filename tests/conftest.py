"""
Pytest 配置和共享 fixtures

单元测试不依赖真实数据库：执行器与 Repository 均使用内存实现。
"""

import os

os.environ.setdefault("ENVIRONMENT", "testing")

import re
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import pytest

from app.core.exceptions import QueryExecutionException
from app.models.data_model import DataModel, DataModelSource
from app.models.data_source import DataSource, DataSourceType, SyncStatus
from app.models.table_metadata import TableMetadata
from app.services.query_executor import QueryExecutor


# ==================== 内存执行器 ====================


class FakeExecutor(QueryExecutor):
    """记录执行过的语句，SELECT 返回预置结果"""

    def __init__(
        self,
        rows: list[dict[str, Any]] | None = None,
        *,
        dialect: str = "postgresql",
        fail_on: Callable[[str, dict[str, Any] | None], bool] | None = None,
    ):
        self.rows = rows or []
        self.dialect = dialect
        self.fail_on = fail_on
        self.statements: list[tuple[str, dict[str, Any] | None]] = []
        self.transactions = 0
        self.rollbacks = 0

    @property
    def sql(self) -> list[str]:
        return [statement for statement, _ in self.statements]

    async def execute_query(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        self.statements.append((sql, params))
        if self.fail_on and self.fail_on(sql, params):
            raise QueryExecutionException(msg=f"模拟执行失败: {sql[:40]}")
        if sql.lstrip().upper().startswith(("SELECT", "{")):
            return [dict(row) for row in self.rows]
        return []

    async def with_transaction(self, fn):
        self.transactions += 1
        try:
            return await fn(self)
        except Exception:
            self.rollbacks += 1
            raise


# ==================== 内存 Repository ====================


def _like_to_regex(pattern: str) -> re.Pattern:
    parts: list[str] = []
    escaped = False
    for char in pattern:
        if escaped:
            parts.append(re.escape(char))
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$")


class FakeTableMetadataRepository:
    def __init__(self, records: list[TableMetadata] | None = None):
        self.records = list(records or [])

    def _live(self, data_source_id: uuid.UUID) -> list[TableMetadata]:
        return [r for r in reversed(self.records) if r.data_source_id == data_source_id and not r.deleted]

    async def find_exact(self, data_source_id: uuid.UUID, table_name: str) -> TableMetadata | None:
        for record in self._live(data_source_id):
            if table_name in (record.physical_table_name, record.logical_table_name):
                return record
        return None

    async def find_like(self, data_source_id: uuid.UUID, pattern: str) -> TableMetadata | None:
        regex = _like_to_regex(pattern)
        for record in self._live(data_source_id):
            if regex.match(record.physical_table_name):
                return record
        return None

    async def count_by_data_source(self, data_source_id: uuid.UUID) -> int:
        return len(self._live(data_source_id))

    async def create(self, obj_in: dict[str, Any]) -> TableMetadata:
        record = TableMetadata(id=uuid.uuid4(), deleted=0, **obj_in)
        self.records.append(record)
        return record

    async def soft_delete_physical(self, schema_name: str, physical_table_name: str) -> int:
        count = 0
        for record in self.records:
            if record.schema_name == schema_name and record.physical_table_name == physical_table_name:
                record.deleted = 1
                count += 1
        return count


class FakeDataSourceRepository:
    def __init__(self, data_sources: list[DataSource] | None = None):
        self.data_sources = {ds.id: ds for ds in data_sources or []}

    async def get_by_id(self, id: uuid.UUID) -> DataSource | None:
        return self.data_sources.get(id)

    async def get_by_ids(self, ids: list[uuid.UUID], user_id: uuid.UUID | None = None) -> list[DataSource]:
        return [
            ds
            for ds_id, ds in self.data_sources.items()
            if ds_id in ids and (user_id is None or ds.user_id == user_id)
        ]


class FakeDataModelRepository:
    def __init__(self):
        self.models: dict[uuid.UUID, DataModel] = {}

    async def create(self, obj_in: dict[str, Any]) -> DataModel:
        model = DataModel(id=uuid.uuid4(), deleted=0, create_time=datetime.now(timezone.utc), **obj_in)
        self.models[model.id] = model
        return model

    async def update(self, db_obj: DataModel, obj_in: dict[str, Any]) -> DataModel:
        for field, value in obj_in.items():
            setattr(db_obj, field, value)
        return db_obj

    async def delete(self, id: uuid.UUID, *, soft_delete: bool = True) -> bool:
        model = self.models.get(id)
        if model is None:
            return False
        model.deleted = 1
        return True

    async def get_by_user(self, id: uuid.UUID, user_id: uuid.UUID) -> DataModel | None:
        model = self.models.get(id)
        if model is None or model.deleted or model.user_id != user_id:
            return None
        return model

    async def name_exists(self, schema_name: str, name: str) -> bool:
        return any(m.schema_name == schema_name and m.name == name and not m.deleted for m in self.models.values())

    async def get_dependents(self, data_source_id: uuid.UUID) -> list[DataModel]:
        return [m for m in self.models.values() if not m.deleted and m.data_source_id == data_source_id]


class FakeDataModelSourceRepository:
    def __init__(self):
        self.links: list[DataModelSource] = []

    async def link_sources(self, data_model_id: uuid.UUID, data_source_ids: list[uuid.UUID]) -> list[DataModelSource]:
        links = [
            DataModelSource(id=uuid.uuid4(), data_model_id=data_model_id, data_source_id=ds_id)
            for ds_id in dict.fromkeys(data_source_ids)
        ]
        self.links.extend(links)
        return links


# ==================== Fixtures ====================


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_data_source(user_id: uuid.UUID) -> Callable[..., DataSource]:
    """数据源工厂"""

    def factory(
        data_type: DataSourceType | str = DataSourceType.POSTGRESQL,
        *,
        synced: bool = False,
        connection_details: dict[str, Any] | None = None,
        name: str | None = None,
    ) -> DataSource:
        value = data_type.value if isinstance(data_type, DataSourceType) else data_type
        return DataSource(
            id=uuid.uuid4(),
            name=name or f"{value}-source",
            data_type=value,
            user_id=user_id,
            connection_details=connection_details
            or {"host": "localhost", "port": 5432, "database": "shop", "username": "app", "password": "secret"},
            sync_status=SyncStatus.COMPLETED.value if synced else None,
            last_sync_at=datetime.now(timezone.utc) if synced else None,
            deleted=0,
        )

    return factory


@pytest.fixture
def make_metadata(user_id: uuid.UUID) -> Callable[..., TableMetadata]:
    """表元数据工厂"""

    def factory(data_source_id: uuid.UUID, schema: str, physical: str, logical: str | None = None) -> TableMetadata:
        return TableMetadata(
            id=uuid.uuid4(),
            data_source_id=data_source_id,
            user_id=user_id,
            schema_name=schema,
            physical_table_name=physical,
            logical_table_name=logical or physical,
            deleted=0,
        )

    return factory


@pytest.fixture
def fake_executor_cls() -> type[FakeExecutor]:
    return FakeExecutor


@pytest.fixture
def metadata_repo_cls() -> type[FakeTableMetadataRepository]:
    return FakeTableMetadataRepository


@pytest.fixture
def data_source_repo_cls() -> type[FakeDataSourceRepository]:
    return FakeDataSourceRepository


@pytest.fixture
def data_model_repo() -> FakeDataModelRepository:
    return FakeDataModelRepository()


@pytest.fixture
def data_model_source_repo() -> FakeDataModelSourceRepository:
    return FakeDataModelSourceRepository()
