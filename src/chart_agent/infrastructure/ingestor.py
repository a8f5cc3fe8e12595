import asyncio
import logging
from typing import Dict, List, Optional

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from tqdm import tqdm

from chart_agent.infrastructure.sql_tool import get_sql_engine
from chart_agent.interfaces.memory import IMemoryStore

logger = logging.getLogger(__name__)

# 스키마 문서 검색 필터와 맞춰야 하는 메타데이터
SCHEMA_DOC_METADATA = {
    "type": "technical_documentation",
    "category": "system_documentation",
    "tags": "schema",
}


class SchemaIngestor:
    """
    SQL 데이터베이스 구조를 읽어 테이블별 스키마 문서를 만들고 벡터 메모리에 적재합니다.
    understanding_schema 단계는 이 문서들을 검색해 SQL 생성 컨텍스트로 사용합니다.
    """

    def __init__(self, engine: Optional[Engine] = None, memory: Optional[IMemoryStore] = None):
        self.engine = engine or get_sql_engine()
        self.memory = memory

    def describe_table(self, inspector, table_name: str) -> str:
        lines = [f"## {table_name} Table", "Columns:"]
        for column in inspector.get_columns(table_name):
            lines.append(f"- {column['name']} ({column['type']})")
        foreign_keys = inspector.get_foreign_keys(table_name)
        if foreign_keys:
            lines.append("Relationships:")
            for fk in foreign_keys:
                lines.append(
                    f"* {', '.join(fk['constrained_columns'])} -> "
                    f"{fk['referred_table']}({', '.join(fk['referred_columns'])})"
                )
        return "\n".join(lines)

    def describe_database(self) -> Dict[str, str]:
        """SQLAlchemy inspect 로 모든 테이블의 스키마 문서를 생성합니다. {테이블명: 문서}"""
        inspector = inspect(self.engine)
        return {name: self.describe_table(inspector, name) for name in inspector.get_table_names()}

    async def ingest(self) -> List[str]:
        """스키마 문서를 벡터 메모리에 저장하고 적재한 테이블 이름을 반환합니다."""
        if self.memory is None:
            raise ValueError("memory store is required for ingestion")
        documents = await asyncio.to_thread(self.describe_database)
        for table_name, document in tqdm(documents.items(), desc="Schema docs"):
            await self.memory.store_vector_memory(document, {**SCHEMA_DOC_METADATA, "table": table_name})
        logger.info(f"스키마 문서 {len(documents)}개 적재 완료")
        return list(documents.keys())


def run_cli():
    """현재 SQL_DATABASE_URL 의 스키마 문서를 출력합니다."""
    ingestor = SchemaIngestor()
    documents = ingestor.describe_database()
    if not documents:
        print("⚠️ 테이블이 없습니다. SQL_DATABASE_URL 설정을 확인하세요.")
        return
    for document in documents.values():
        print(document + "\n")
    print(f"✅ 총 {len(documents)}개 테이블")


if __name__ == "__main__":
    run_cli()
