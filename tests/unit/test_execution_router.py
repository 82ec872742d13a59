"""
执行路由单元测试
"""

import json

import pytest

from app.core.exceptions import QueryExecutionException, ResolutionException
from app.models.data_source import DataSourceType
from app.schemas.query import MongoQuery, QueryDescriptor
from app.services.execution_router import ExecutionRouter
from app.services.source_locator import ExactMetadataMatch, SourceLocator


def _descriptor(*columns) -> QueryDescriptor:
    return QueryDescriptor.model_validate({"columns": list(columns)})


def _column(ds, schema="public", table="orders", column="id"):
    return {"schema": schema, "table_name": table, "column_name": column, "data_source_id": str(ds.id)}


@pytest.fixture
def harness(fake_executor_cls, metadata_repo_cls, data_source_repo_cls):
    """构造带内存执行器的路由"""

    def build(data_sources, records=(), *, internal_rows=None, internal_fail=None):
        internal = fake_executor_cls(internal_rows or [{"id": 1}], fail_on=internal_fail)
        external = fake_executor_cls([{"id": 2}], dialect="mysql")
        mongo = fake_executor_cls([{"_id": "abc"}], dialect="mongodb")
        created = {"external": [], "mongo": []}

        def external_factory(ds):
            created["external"].append(ds.id)
            return external

        def mongo_factory(ds):
            created["mongo"].append(ds.id)
            return mongo

        locator = SourceLocator(
            metadata_repo=metadata_repo_cls(list(records)),
            data_source_repo=data_source_repo_cls(list(data_sources)),
        )
        router = ExecutionRouter(
            locator=locator,
            internal_executor=internal,
            external_factory=external_factory,
            mongo_factory=mongo_factory,
        )
        return router, internal, external, mongo, created

    return build


class TestSingleSource:
    """单数据源路由测试类"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("data_type", [DataSourceType.EXCEL, DataSourceType.GOOGLE_ADS, DataSourceType.KLAVIYO])
    async def test_file_and_api_sources_use_internal_store(self, data_type, harness, make_data_source):
        ds = make_data_source(data_type)
        router, internal, external, _, created = harness([ds])

        result = await router.execute(_descriptor(_column(ds)), "SELECT 1", {ds.id: ds})

        assert result.success
        assert result.data == [{"id": 1}]
        assert internal.sql == ["SELECT 1"]
        assert created["external"] == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_external_relational_uses_direct_connection(self, harness, make_data_source):
        ds = make_data_source(DataSourceType.MARIADB)
        router, internal, external, _, created = harness([ds])

        result = await router.execute(_descriptor(_column(ds)), "SELECT 2", {ds.id: ds})

        assert result.data == [{"id": 2}]
        assert created["external"] == [ds.id]
        assert internal.sql == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsupported_provider_returns_failure(self, harness, make_data_source):
        """未知数据源类型返回 not supported，不抛异常"""
        ds = make_data_source("linkedin_ads")
        router, *_ = harness([ds])

        result = await router.execute(_descriptor(_column(ds)), "SELECT 1", {ds.id: ds})

        assert not result.success
        assert "not supported" in result.error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_data_source(self, harness, make_data_source):
        ds = make_data_source()
        router, *_ = harness([])
        with pytest.raises(ResolutionException):
            await router.execute(_descriptor(_column(ds)), "SELECT 1", {})

    @pytest.mark.unit
    def test_target_dialect(self, harness, make_data_source):
        mysql = make_data_source(DataSourceType.MYSQL)
        excel = make_data_source(DataSourceType.EXCEL)
        router, *_ = harness([mysql, excel])

        assert router.target_dialect(_descriptor(_column(mysql)), {mysql.id: mysql}) == "mysql"
        assert router.target_dialect(_descriptor(_column(excel)), {excel.id: excel}) == "postgresql"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_logical_table_rewritten_to_physical(self, harness, make_data_source, make_metadata):
        """API 类数据源的逻辑表名改写为物理表名后执行"""
        ds = make_data_source(DataSourceType.GOOGLE_ANALYTICS)
        records = [make_metadata(ds.id, "dra_google_analytics", "traffic_overview_ab12", "Traffic Overview")]
        router, internal, *_ = harness([ds], records)
        column = _column(ds, schema="dra_google_analytics", table="Traffic Overview", column="sessions")
        descriptor = _descriptor(column)
        sql = (
            "SELECT dra_google_analytics.Traffic Overview.sessions AS traffic_overview_sessions "
            "FROM dra_google_analytics.Traffic Overview"
        )

        await router.execute(descriptor, sql, {ds.id: ds})

        assert internal.sql == [
            "SELECT dra_google_analytics.traffic_overview_ab12.sessions AS traffic_overview_sessions "
            "FROM dra_google_analytics.traffic_overview_ab12"
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_table_map_degrades_to_original_references(
        self, make_data_source, fake_executor_cls, metadata_repo_cls, data_source_repo_cls
    ):
        """表映射为空时退化为使用原始引用在单数据源上执行"""
        ds = make_data_source(DataSourceType.EXCEL)
        internal = fake_executor_cls([{"id": 1}])
        locator = SourceLocator(
            metadata_repo=metadata_repo_cls([]),
            data_source_repo=data_source_repo_cls([ds]),
            strategies=(ExactMetadataMatch(),),
        )
        router = ExecutionRouter(locator=locator, internal_executor=internal)

        descriptor = _descriptor(_column(ds, schema="dra_excel", table="sheet_1"))

        result = await router.execute(descriptor, "SELECT 1", {ds.id: ds})

        assert result.success
        assert internal.sql == ["SELECT 1"]


class TestMongo:
    """MongoDB 路由测试类"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsynced_uses_native_pipeline(self, harness, make_data_source):
        ds = make_data_source(DataSourceType.MONGODB)
        router, internal, _, mongo, _ = harness([ds])
        query = MongoQuery(collection="events", pipeline=[{"$match": {"type": "click"}}])

        result = await router.execute(_descriptor(_column(ds)), "SELECT 1", {ds.id: ds}, mongo_query=query)

        assert result.data == [{"_id": "abc"}]
        assert internal.sql == []
        assert json.loads(mongo.sql[0])["collection"] == "events"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsynced_without_pipeline_not_supported(self, harness, make_data_source):
        ds = make_data_source(DataSourceType.MONGODB)
        router, *_ = harness([ds])

        result = await router.execute(_descriptor(_column(ds)), "SELECT 1", {ds.id: ds})

        assert not result.success
        assert "not supported" in result.error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_synced_translates_pipeline(self, harness, make_data_source):
        ds = make_data_source(DataSourceType.MONGODB, synced=True)
        router, internal, _, mongo, _ = harness([ds])
        query = MongoQuery(collection="events", pipeline=[{"$limit": 5}])

        await router.execute(_descriptor(_column(ds)), "SELECT 1", {ds.id: ds}, mongo_query=query)

        assert internal.sql == [f"SELECT * FROM dra_mongodb.events_data_source_{ds.id.hex} LIMIT 5"]
        assert mongo.sql == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_synced_failure_falls_back_to_native_once(self, harness, make_data_source):
        """同步副本查询失败时回退到原生聚合"""
        ds = make_data_source(DataSourceType.MONGODB, synced=True)
        router, internal, _, mongo, created = harness([ds], internal_fail=lambda sql, params: True)
        query = MongoQuery(collection="events", pipeline=[{"$limit": 5}])

        result = await router.execute(_descriptor(_column(ds)), "SELECT 1", {ds.id: ds}, mongo_query=query)

        assert result.success
        assert len(internal.sql) == 1
        assert created["mongo"] == [ds.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_synced_failure_without_pipeline_raises(self, harness, make_data_source):
        ds = make_data_source(DataSourceType.MONGODB, synced=True)
        router, *_ = harness([ds], internal_fail=lambda sql, params: True)

        with pytest.raises(QueryExecutionException):
            await router.execute(_descriptor(_column(ds, schema="shop", table="events")), "SELECT 1", {ds.id: ds})


class TestCrossSource:
    """跨数据源路由测试类"""

    @staticmethod
    def _join_descriptor(left, right) -> QueryDescriptor:
        return QueryDescriptor.model_validate(
            {
                "columns": [
                    _column(left, schema="mysql_db", table="orders"),
                    _column(right, schema="dra_excel", table="targets", column="goal"),
                ],
                "join_conditions": [
                    {
                        "left_table_schema": "mysql_db",
                        "left_table_name": "orders",
                        "left_column_name": "region",
                        "right_table_schema": "dra_excel",
                        "right_table_name": "targets",
                        "right_column_name": "region",
                    }
                ],
            }
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_join_rewritten_and_run_on_internal_store(self, harness, make_data_source, make_metadata):
        mysql = make_data_source(DataSourceType.MYSQL)
        excel = make_data_source(DataSourceType.EXCEL)
        records = [make_metadata(mysql.id, "dra_mysql_7", "orders_abc", "orders")]
        router, internal, _, _, created = harness([mysql, excel], records)
        sql = "SELECT * FROM mysql_db.orders JOIN dra_excel.targets ON mysql_db.orders.region = dra_excel.targets.region"

        result = await router.execute(self._join_descriptor(mysql, excel), sql, {mysql.id: mysql, excel.id: excel})

        assert result.success
        assert internal.sql == [
            "SELECT * FROM dra_mysql_7.orders_abc JOIN dra_excel.targets "
            "ON dra_mysql_7.orders_abc.region = dra_excel.targets.region"
        ]
        assert created["external"] == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unresolved_table_refuses_execution(self, harness, make_data_source, make_metadata):
        """存在无法定位的表时拒绝执行，不会丢弃该表"""
        mysql = make_data_source(DataSourceType.MYSQL)
        excel = make_data_source(DataSourceType.EXCEL)
        records = [make_metadata(mysql.id, "dra_mysql_7", "customers_abc", "customers")]
        router, internal, *_ = harness([mysql, excel], records)

        with pytest.raises(ResolutionException) as exc_info:
            await router.execute(self._join_descriptor(mysql, excel), "SELECT 1", {mysql.id: mysql, excel.id: excel})

        assert "mysql_db.orders" in exc_info.value.msg
        assert internal.sql == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cross_source_without_join_uses_first_source(self, harness, make_data_source):
        mysql = make_data_source(DataSourceType.MYSQL)
        excel = make_data_source(DataSourceType.EXCEL)
        router, internal, _, _, created = harness([mysql, excel])
        descriptor = _descriptor(_column(mysql), _column(excel, schema="dra_excel", table="targets"))

        await router.execute(descriptor, "SELECT 1", {mysql.id: mysql, excel.id: excel})

        assert created["external"] == [mysql.id]
        assert internal.sql == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("data_type", [DataSourceType.POSTGRESQL, DataSourceType.MYSQL])
    async def test_unsynced_external_join_refuses_execution(self, data_type, harness, make_data_source):
        """未同步且没有任何元数据的外部表参与 JOIN 时拒绝执行"""
        external = make_data_source(data_type)
        excel = make_data_source(DataSourceType.EXCEL)
        router, internal, _, _, created = harness([external, excel])

        with pytest.raises(ResolutionException) as exc_info:
            await router.execute(
                self._join_descriptor(external, excel),
                "SELECT * FROM mysql_db.orders JOIN dra_excel.targets ON 1=1",
                {external.id: external, excel.id: excel},
            )

        assert "mysql_db.orders" in exc_info.value.msg
        assert internal.sql == []
        assert created["external"] == []
