from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.database import (
    AnalyzerMode,
    AnalyzerProcessRecord,
    StageType,
    async_session,
    utcnow,
)
from services.errors import PersistenceError


class ProcessRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self.session_factory = session_factory or async_session

    async def create(
        self,
        package_id: str,
        mode: AnalyzerMode,
        user_id: int | None = None,
        is_preprocess: bool = False,
    ) -> AnalyzerProcessRecord:
        record = AnalyzerProcessRecord(
            package_id=package_id,
            mode=mode,
            user_id=user_id,
            is_preprocess=is_preprocess,
            current_stage=StageType.INIT,
            process_sheet={},
        )
        try:
            async with self.session_factory() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create process: {e}") from e
        return record

    async def get(self, process_id: int) -> AnalyzerProcessRecord | None:
        async with self.session_factory() as session:
            return await session.get(AnalyzerProcessRecord, process_id)

    async def save(self, record: AnalyzerProcessRecord, sheet: dict):
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(AnalyzerProcessRecord)
                    .where(AnalyzerProcessRecord.id == record.id)
                    .values(
                        package_id=record.package_id,
                        mode=record.mode,
                        current_stage=record.current_stage,
                        is_preprocess=record.is_preprocess,
                        process_sheet=sheet,
                        updated_at=utcnow(),
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save process {record.id}: {e}") from e
        record.process_sheet = sheet
