"""create_data_model_tables

Revision ID: 20261019_data_models
Revises:
Create Date: 2026-10-19 10:00:00.000000

Creates the query engine tables: data sources, table metadata,
data models and the data model / data source junction.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '20261019_data_models'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, comment='主键ID'),
        sa.Column('create_time', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), comment='创建时间'),
        sa.Column('update_time', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), comment='更新时间'),
        sa.Column('deleted', sa.Integer(), nullable=False, server_default='0', comment='逻辑删除: 0-未删除 1-已删除'),
        sa.Column('create_by', sa.String(), nullable=True, comment='创建人'),
        sa.Column('update_by', sa.String(), nullable=True, comment='更新人'),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'data_sources',
        *_base_columns(),
        sa.Column('name', sa.String(100), nullable=False, comment='数据源名称'),
        sa.Column('data_type', sa.String(30), nullable=False, comment='数据源类型'),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False, comment='所属用户ID'),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=True, comment='所属项目ID'),
        sa.Column('connection_details', postgresql.JSONB(), nullable=True, comment='连接信息(JSON)'),
        sa.Column('sync_status', sa.String(20), nullable=True, comment='同步状态: pending/syncing/completed/failed'),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True, comment='最后同步时间'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_data_sources_user_id'), 'data_sources', ['user_id'])
    op.create_index(op.f('ix_data_sources_project_id'), 'data_sources', ['project_id'])

    op.create_table(
        'table_metadata',
        *_base_columns(),
        sa.Column('data_source_id', postgresql.UUID(as_uuid=True), nullable=True, comment='数据源ID（数据模型表为空）'),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False, comment='所属用户ID'),
        sa.Column('schema_name', sa.String(100), nullable=False, comment='物理 schema'),
        sa.Column('physical_table_name', sa.String(255), nullable=False, comment='物理表名'),
        sa.Column('logical_table_name', sa.String(255), nullable=False, comment='逻辑表名'),
        sa.Column('original_sheet_name', sa.String(255), nullable=True, comment='原始工作表名'),
        sa.Column('file_id', sa.String(255), nullable=True, comment='来源文件ID'),
        sa.Column('table_type', sa.String(20), nullable=False, server_default='synced', comment='表来源: synced/file/data_model'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_table_metadata_data_source_id'), 'table_metadata', ['data_source_id'])
    op.create_index('ix_table_metadata_ds_physical', 'table_metadata', ['data_source_id', 'physical_table_name'])
    op.create_index('ix_table_metadata_ds_logical', 'table_metadata', ['data_source_id', 'logical_table_name'])

    op.create_table(
        'data_models',
        *_base_columns(),
        sa.Column('schema_name', sa.String(100), nullable=False, server_default='public', comment='物理 schema'),
        sa.Column('name', sa.String(255), nullable=False, comment='物理表名'),
        sa.Column('display_name', sa.String(255), nullable=True, comment='用户填写的模型名称'),
        sa.Column('sql_query', sa.Text(), nullable=False, comment='生成物化表的 SQL'),
        sa.Column('query', postgresql.JSONB(), nullable=False, comment='原始查询描述(JSON)'),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False, comment='所属用户ID'),
        sa.Column('data_source_id', postgresql.UUID(as_uuid=True), nullable=True, comment='单数据源模型的数据源ID（跨源为空）'),
        sa.Column('is_cross_source', sa.Boolean(), nullable=False, server_default=sa.false(), comment='是否跨数据源'),
        sa.Column('row_count', sa.Integer(), nullable=True, comment='物化行数'),
        sa.Column('column_count', sa.Integer(), nullable=True, comment='物化列数'),
        sa.Column('refresh_status', sa.String(20), nullable=False, server_default='idle', comment='刷新状态'),
        sa.Column('last_refreshed_at', sa.DateTime(timezone=True), nullable=True, comment='最后刷新时间'),
        sa.Column('refresh_error', sa.Text(), nullable=True, comment='最近一次刷新错误'),
        sa.ForeignKeyConstraint(['data_source_id'], ['data_sources.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_data_models_user_id'), 'data_models', ['user_id'])
    op.create_index(op.f('ix_data_models_data_source_id'), 'data_models', ['data_source_id'])
    # 物化表名唯一性由存储层保证（仅约束未删除的记录）
    op.create_index(
        'uq_data_models_schema_name',
        'data_models',
        ['schema_name', 'name'],
        unique=True,
        postgresql_where=sa.text('deleted = 0'),
    )

    op.create_table(
        'data_model_sources',
        *_base_columns(),
        sa.Column('data_model_id', postgresql.UUID(as_uuid=True), nullable=False, comment='数据模型ID'),
        sa.Column('data_source_id', postgresql.UUID(as_uuid=True), nullable=False, comment='数据源ID'),
        sa.ForeignKeyConstraint(['data_model_id'], ['data_models.id']),
        sa.ForeignKeyConstraint(['data_source_id'], ['data_sources.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_data_model_sources_data_model_id'), 'data_model_sources', ['data_model_id'])
    op.create_index(op.f('ix_data_model_sources_data_source_id'), 'data_model_sources', ['data_source_id'])

    # 同步数据所在的 schema
    for schema in (
        'dra_excel',
        'dra_pdf',
        'dra_google_analytics',
        'dra_google_ads',
        'dra_google_ad_manager',
        'dra_meta_ads',
        'dra_hubspot',
        'dra_klaviyo',
        'dra_mongodb',
    ):
        op.execute(f'CREATE SCHEMA IF NOT EXISTS {schema}')


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('data_model_sources')
    op.drop_index('uq_data_models_schema_name', table_name='data_models')
    op.drop_table('data_models')
    op.drop_table('table_metadata')
    op.drop_table('data_sources')
