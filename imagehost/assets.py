from sqlalchemy import delete, exists, select
from sqlalchemy.orm import Session, sessionmaker

from imagehost.models import Asset


class AssetRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def create(
        self,
        short_code: str,
        storage_key: str,
        file_name: str,
        mime_type: str,
        size: int,
        owner_id: str = "anonymous",
        batch_id: str | None = None,
    ) -> Asset:
        with self.session_factory() as db:
            asset = Asset(
                short_code=short_code,
                storage_key=storage_key,
                file_name=file_name,
                mime_type=mime_type,
                size=size,
                owner_id=owner_id,
                batch_id=batch_id,
            )
            db.add(asset)
            db.commit()
            db.refresh(asset)
            return asset

    def exists(self, short_code: str) -> bool:
        with self.session_factory() as db:
            return bool(db.scalar(select(exists().where(Asset.short_code == short_code))))

    def get(self, short_code: str) -> Asset | None:
        with self.session_factory() as db:
            return db.scalar(select(Asset).where(Asset.short_code == short_code))

    def list_for_owner(self, owner_id: str, limit: int = 100) -> list[Asset]:
        with self.session_factory() as db:
            return list(
                db.scalars(
                    select(Asset).where(Asset.owner_id == owner_id).order_by(Asset.created_at.desc()).limit(limit)
                ).all()
            )

    def list_for_batch(self, batch_id: str) -> list[Asset]:
        with self.session_factory() as db:
            return list(db.scalars(select(Asset).where(Asset.batch_id == batch_id).order_by(Asset.created_at)).all())

    def delete(self, short_code: str) -> bool:
        with self.session_factory() as db:
            deleted = db.execute(delete(Asset).where(Asset.short_code == short_code)).rowcount or 0
            db.commit()
            return deleted > 0
