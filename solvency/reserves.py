from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from solvency.encoding import check_uint256, format_units
from solvency.errors import InputError, ReserveReadError
from solvency.models import ReservesSnapshot, SolvencyVerdict

logger = logging.getLogger(__name__)

INFINITE_RATIO = "∞%"


@runtime_checkable
class LedgerReader(Protocol):
    def get_balance(self, account: str) -> int: ...


class ReservesOracle:
    """Reads custody reserves and compares them with a liability total."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def scan(self, custody_account: str, ledger_reader: LedgerReader) -> ReservesSnapshot:
        if not custody_account:
            raise InputError("custody account is required")
        try:
            raw = ledger_reader.get_balance(custody_account)
        except ReserveReadError:
            raise
        except Exception as exc:
            raise ReserveReadError(f"reading balance of {custody_account} failed: {exc}") from exc

        try:
            balance = check_uint256(int(raw), "reserves")
        except (TypeError, ValueError) as exc:
            raise ReserveReadError(f"ledger returned an invalid balance for {custody_account}: {raw!r}") from exc

        snapshot = ReservesSnapshot(account=custody_account, balance=balance, timestamp=int(self._clock()))
        logger.info("Reserves of %s: %s", custody_account, format_units(balance))
        return snapshot

    @staticmethod
    def assess_solvency(reserves: int, liabilities: int) -> SolvencyVerdict:
        return assess_solvency(reserves, liabilities)


def format_ratio_bps(bps: int) -> str:
    whole, frac = divmod(bps, 100)
    return f"{whole}.{frac:02d}%"


def assess_solvency(reserves: int, liabilities: int) -> SolvencyVerdict:
    check_uint256(reserves, "reserves")
    check_uint256(liabilities, "liabilities")

    if liabilities > 0:
        bps: int | None = reserves * 10000 // liabilities
        ratio = format_ratio_bps(bps)
    elif reserves > 0:
        bps = None
        ratio = INFINITE_RATIO
    else:
        bps = 10000
        ratio = format_ratio_bps(bps)

    return SolvencyVerdict(
        is_solvent=reserves >= liabilities,
        ratio=ratio,
        excess=reserves - liabilities,
        ratio_bps=bps,
    )
