"""Persistence collaborators: cached GATT layouts and the log export sink."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

from sqlalchemy import DateTime, String, Text, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LayoutStore(Protocol):
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the cached layout for ``key`` or ``None``."""

    def put(self, key: str, layout: Mapping[str, Any]) -> None:
        """Store ``layout`` under ``key``, replacing any previous value."""


class _Base(DeclarativeBase):
    pass


class DeviceLayout(_Base):
    __tablename__ = "device_layouts"

    address: Mapped[str] = mapped_column(String(120), primary_key=True)
    layout: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, nullable=False)


class SqlLayoutStore:
    """Key-value store of discovered layouts keyed by device address."""

    def __init__(self, url: str | Path) -> None:
        if isinstance(url, Path) or "://" not in str(url):
            path = Path(url)
            path.parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{path}"
        self.engine = create_engine(str(url))
        _Base.metadata.create_all(self.engine)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with Session(self.engine) as session:
            record = session.get(DeviceLayout, key)
            if record is None:
                return None
            return json.loads(record.layout)

    def put(self, key: str, layout: Mapping[str, Any]) -> None:
        payload = json.dumps(layout, separators=(",", ":"), sort_keys=True)
        with Session(self.engine) as session:
            record = session.get(DeviceLayout, key)
            if record is None:
                record = DeviceLayout(address=key, layout=payload)
                session.add(record)
            else:
                record.layout = payload
                record.updated_at = _utc_now()
            try:
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

    def close(self) -> None:
        self.engine.dispose()


class DirectorySink:
    """File sink writing exports below a fixed root directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def resolve(self, destination: str) -> Path:
        target = Path(destination)
        if not target.is_absolute():
            target = self.root / target
        return target

    def write_text(self, destination: str, text: str) -> bool:
        target = self.resolve(destination)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text, encoding="utf-8")
        except OSError:
            logger.exception("Failed to write export to %s", target)
            return False
        return True


__all__ = [
    "LayoutStore",
    "SqlLayoutStore",
    "DeviceLayout",
    "DirectorySink",
]
