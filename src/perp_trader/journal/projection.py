"""Read-side JSON projection of engine state for downstream viewers.

Writes ``positions.json``, ``trades.json`` and ``account.json``. Field names
are camelCase and stable; consumers depend on them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from perp_trader.types import AccountState, ClosedTrade, Position

MAX_TRADES = 200


@dataclass(slots=True)
class _TradeStats:
    total_realized_pnl: float = 0.0
    total_fees: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0


class StateProjection:
    """Persist the latest positions, recent trades and account snapshot."""

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._state_dir.mkdir(parents=True, exist_ok=True)
        self._trades: list[dict[str, Any]] = self._load_list("trades.json")
        self._stats = self._load_stats()

    @property
    def account_file(self) -> Path:
        return self._state_dir / "account.json"

    def record_trade(self, trade: ClosedTrade) -> None:
        self._trades.append(_trade_row(trade))
        self._trades = self._trades[-MAX_TRADES:]
        self._stats.total_trades += 1
        self._stats.total_realized_pnl += trade.pnl_usdt
        self._stats.total_fees += trade.fee
        if trade.pnl_usdt - trade.fee > 0:
            self._stats.winning_trades += 1
        else:
            self._stats.losing_trades += 1

    def write(
        self,
        positions: list[Position],
        account: AccountState | None,
        *,
        stale: bool = False,
    ) -> None:
        """Write all three views. With ``stale`` set, the last positions file is kept."""
        now = datetime.now(timezone.utc)
        if not stale:
            self._write("positions.json", [_position_row(p) for p in positions])
        self._write("trades.json", self._trades)
        self._write("account.json", self._account_row(account, stale, now))

    def load_positions(self) -> list[dict[str, Any]]:
        return self._load_list("positions.json")

    def load_account(self) -> dict[str, Any]:
        path = self.account_file
        if not path.exists():
            return {}
        raw = json.loads(path.read_text(encoding="utf-8"))
        return raw if isinstance(raw, dict) else {}

    def _account_row(
        self,
        account: AccountState | None,
        stale: bool,
        now: datetime,
    ) -> dict[str, Any]:
        previous = self.load_account()
        stats = self._stats
        win_rate = stats.winning_trades / stats.total_trades * 100 if stats.total_trades else 0.0
        if account is not None:
            balances = {
                "totalUnrealizedPnL": account.total_unrealized_pnl,
                "availableCash": account.available_cash,
                "totalWalletBalance": account.wallet_balance,
            }
        else:
            balances = {
                "totalUnrealizedPnL": previous.get("totalUnrealizedPnL", 0.0),
                "availableCash": previous.get("availableCash", 0.0),
                "totalWalletBalance": previous.get("totalWalletBalance", 0.0),
            }
        return {
            **balances,
            "totalRealizedPnL": stats.total_realized_pnl,
            "totalFees": stats.total_fees,
            "netPnL": stats.total_realized_pnl - stats.total_fees,
            "totalTrades": stats.total_trades,
            "winningTrades": stats.winning_trades,
            "losingTrades": stats.losing_trades,
            "winRate": win_rate,
            "stale": stale,
            "timestamp": int(now.timestamp() * 1000),
        }

    def _load_stats(self) -> _TradeStats:
        raw = self.load_account()
        return _TradeStats(
            total_realized_pnl=float(raw.get("totalRealizedPnL", 0.0)),
            total_fees=float(raw.get("totalFees", 0.0)),
            total_trades=int(raw.get("totalTrades", 0)),
            winning_trades=int(raw.get("winningTrades", 0)),
            losing_trades=int(raw.get("losingTrades", 0)),
        )

    def _load_list(self, name: str) -> list[dict[str, Any]]:
        path = self._state_dir / name
        if not path.exists():
            return []
        raw = json.loads(path.read_text(encoding="utf-8"))
        return raw if isinstance(raw, list) else []

    def _write(self, name: str, payload: Any) -> None:
        path = self._state_dir / name
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding="utf-8")
        tmp.replace(path)


def _position_row(position: Position) -> dict[str, Any]:
    mark = position.mark_price if position.mark_price is not None else position.entry_price
    return {
        "symbol": position.symbol,
        "side": position.side.value,
        "entryPrice": position.entry_price,
        "markPrice": mark,
        "leverage": position.leverage,
        "stopLoss": position.stop_loss,
        "takeProfit": position.take_profit,
        "unrealizedPnL": position.unrealized_pnl,
        "openedAt": position.opened_at.isoformat(),
        "notional": position.quantity * mark,
        "positionAmt": position.quantity,
        "stage": position.stage.name,
        "isScalper": position.is_scalper,
    }


def _trade_row(trade: ClosedTrade) -> dict[str, Any]:
    return {
        "symbol": trade.symbol,
        "side": trade.side.value,
        "entryPrice": trade.entry_price,
        "exitPrice": trade.exit_price,
        "quantity": trade.quantity,
        "leverage": trade.leverage,
        "pnl": trade.pnl_usdt,
        "pnlPercent": trade.profit_percent,
        "fee": trade.fee,
        "reason": trade.reason,
        "openedAt": trade.opened_at.isoformat(),
        "closedAt": trade.closed_at.isoformat(),
    }
