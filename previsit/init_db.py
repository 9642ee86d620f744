import asyncio

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine
from previsit.database import Base
from previsit.config import DATABASE_URL
import previsit.models  # noqa: F401  register tables with Base.metadata

_VIEW_SQL = """
CREATE OR REPLACE VIEW ai_clinical_data AS
SELECT c.id AS consultation_id, c.patient_id, c.doctor_id, c.form_data, c.voice_data
FROM consultations c
"""


async def init_db():
    engine = create_async_engine(DATABASE_URL, echo=True)
    tables = [
        t for t in Base.metadata.sorted_tables
        if not t.info.get("is_view")
    ]
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: Base.metadata.create_all(sync_conn, tables=tables))
        await conn.execute(text(_VIEW_SQL))
    await engine.dispose()
    print("Database tables created successfully!")


if __name__ == "__main__":
    asyncio.run(init_db())
