"""Atomic write units spanning a transaction row and its balance effects.

In ``transactional`` mode a unit is one database transaction. In
``sequential`` mode (stores without multi-row transactions) every step is
committed as it happens and registers a compensating action; a failing unit
rolls back the pending step and replays the compensations newest-first.
"""

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import inspect, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from errors import ConsistencyFailure

logger = logging.getLogger(__name__)

_ACTIVE_UNIT = "ledger_unit_of_work"


class UnitOfWork:
    def __init__(self, session: Session, mode: str) -> None:
        self.session = session
        self.mode = mode
        self.touched_wallets: set[int] = set()
        self._compensations: list[tuple[str, Callable[[], None]]] = []

    @property
    def sequential(self) -> bool:
        return self.mode == "sequential"

    def step(self, undo: Optional[Callable[[], None]] = None, label: str = "write") -> None:
        self.session.flush()
        if not self.sequential:
            return
        self.session.commit()
        if undo is not None:
            self._compensations.append((label, undo))

    def add(self, obj) -> None:
        self.session.add(obj)
        self.session.flush()
        label = f"insert {type(obj).__tablename__}:{obj.id}"
        self.step(lambda: self.session.delete(obj), label=label)

    def snapshot(self, obj) -> Callable[[], None]:
        """Capture the persisted column values of ``obj``.

        The returned callable writes them back; pass it to :meth:`step` once
        the mutation of ``obj`` is done.
        """
        model = type(obj)
        values = {
            attr.key: getattr(obj, attr.key) for attr in inspect(obj).mapper.column_attrs
        }
        ident = values.pop("id")

        def restore() -> None:
            self.session.execute(
                update(model)
                .where(model.id == ident)
                .values(**values)
                .execution_options(synchronize_session="fetch")
            )

        return restore

    def commit(self) -> None:
        self.session.commit()
        self._compensations.clear()

    def abort(self) -> None:
        self.session.rollback()
        if not self._compensations:
            return
        failed: list[str] = []
        for label, undo in reversed(self._compensations):
            try:
                undo()
                self.session.flush()
                self.session.commit()
            except Exception:
                self.session.rollback()
                logger.exception(f"compensation_failed: step={label}")
                failed.append(label)
        self._compensations.clear()
        if failed:
            logger.error(
                f"unit_left_partial: wallets={sorted(self.touched_wallets)} steps={failed}"
            )
            raise ConsistencyFailure(
                "Partial write could not be undone; recalculate the listed wallets",
                code="COMPENSATION_FAILED",
                wallet_ids=self.touched_wallets,
                compensated=False,
            )
        logger.warning(
            f"unit_compensated: wallets={sorted(self.touched_wallets)}"
        )


def current_unit(session: Session) -> Optional[UnitOfWork]:
    return session.info.get(_ACTIVE_UNIT)


@contextmanager
def atomic(session: Session) -> Iterator[UnitOfWork]:
    active = current_unit(session)
    if active is not None:
        yield active
        return

    mode = session.info.get("atomic_mode") or get_settings().atomic_mode
    unit = UnitOfWork(session, mode)
    if unit.sequential:
        logger.warning("unit_of_work: mode=sequential degraded consistency")
    session.info[_ACTIVE_UNIT] = unit
    try:
        try:
            yield unit
            unit.commit()
        except SQLAlchemyError as exc:
            logger.error(f"unit_storage_failure: error={exc.__class__.__name__}")
            unit.abort()
            raise ConsistencyFailure(
                "Storage write failed; re-check state before retrying",
                wallet_ids=unit.touched_wallets,
            ) from exc
        except BaseException:
            unit.abort()
            raise
    finally:
        session.info.pop(_ACTIVE_UNIT, None)
