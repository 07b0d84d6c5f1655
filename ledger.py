import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from errors import ConsistencyFailure, InvalidTransfer, ValidationError
from models import GroupWallet, Wallet
from unit_of_work import current_unit

logger = logging.getLogger(__name__)

WalletModel = Union[type[Wallet], type[GroupWallet]]

# Sign of the effect on the source wallet; transfers also credit the destination.
SOURCE_SIGN = {
    "income": 1,
    "loan": 1,
    "expense": -1,
    "debt": -1,
    "adjust": 1,
    "transfer": -1,
}


@dataclass(frozen=True)
class Effect:
    wallet_id: int
    delta: int


def effects_for(
    txn_type, wallet_id: int, amount: int, to_wallet_id: Optional[int] = None
) -> list[Effect]:
    key = getattr(txn_type, "value", txn_type)
    if key not in SOURCE_SIGN:
        raise ValidationError(f"Unsupported transaction type: {key}", code="INVALID_TYPE")
    effects = [Effect(wallet_id, SOURCE_SIGN[key] * amount)]
    if key == "transfer":
        if to_wallet_id is None:
            raise InvalidTransfer("Transfer requires a destination wallet")
        effects.append(Effect(to_wallet_id, amount))
    return effects


def inverse(effects: Iterable[Effect]) -> list[Effect]:
    return [Effect(e.wallet_id, -e.delta) for e in effects]


class WalletLedger:
    """Sole write path for wallet balances.

    Balances change through a single ``balance = balance + :delta`` UPDATE so
    concurrent writers never lose each other's increments. Storage errors are
    left to propagate to the enclosing unit of work.
    """

    def __init__(self, session: Session, wallet_model: WalletModel = Wallet) -> None:
        self.session = session
        self.model = wallet_model

    def apply_delta(self, wallet_id: int, amount: int) -> None:
        if amount == 0:
            return
        self._increment(wallet_id, amount)
        unit = current_unit(self.session)
        if unit is not None:
            unit.touched_wallets.add(wallet_id)
            unit.step(
                lambda: self._increment(wallet_id, -amount),
                label=f"{self.model.__tablename__}:{wallet_id} delta={amount}",
            )
        logger.debug(
            f"balance_delta: table={self.model.__tablename__} wallet_id={wallet_id} delta={amount}"
        )

    def apply(self, effects: Iterable[Effect]) -> None:
        for effect in effects:
            self.apply_delta(effect.wallet_id, effect.delta)

    def revert(self, effects: Iterable[Effect]) -> None:
        self.apply(inverse(effects))

    def balance_of(self, wallet_id: int) -> int:
        value = self.session.execute(
            select(self.model.balance)
            .where(self.model.id == wallet_id)
            .execution_options(include_deleted=True)
        ).scalar_one_or_none()
        if value is None:
            raise ConsistencyFailure(
                f"Wallet {wallet_id} is missing", wallet_ids=[wallet_id]
            )
        return int(value)

    def reset(self, wallet_id: int, balance) -> int:
        """Overwrite a balance; reserved for recalculation/repair routines.

        ``balance`` may be a SQL expression so the recomputation and the write
        happen in one statement.
        """
        previous = self.balance_of(wallet_id)
        self.session.execute(
            update(self.model)
            .where(self.model.id == wallet_id)
            .values(balance=balance)
            .execution_options(synchronize_session="fetch")
        )
        current = self.balance_of(wallet_id)
        unit = current_unit(self.session)
        if unit is not None:
            unit.touched_wallets.add(wallet_id)
            unit.step(
                lambda: self.session.execute(
                    update(self.model)
                    .where(self.model.id == wallet_id)
                    .values(balance=previous)
                ),
                label=f"{self.model.__tablename__}:{wallet_id} reset",
            )
        if previous != current:
            logger.warning(
                f"balance_repaired: table={self.model.__tablename__} wallet_id={wallet_id} "
                f"from={previous} to={current}"
            )
        return current

    def _increment(self, wallet_id: int, amount: int) -> None:
        result = self.session.execute(
            update(self.model)
            .where(self.model.id == wallet_id)
            .values(balance=self.model.balance + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConsistencyFailure(
                f"Wallet {wallet_id} disappeared during balance update",
                wallet_ids=[wallet_id],
            )
