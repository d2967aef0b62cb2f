from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from perp_trader.journal.projection import MAX_TRADES, StateProjection
from perp_trader.journal.store import JournalStore
from perp_trader.types import AccountState, ClosedTrade, Position, Side, Stage

T0 = datetime(2024, 1, 1, tzinfo=UTC)


def _account(balance: float = 1_000.0) -> AccountState:
    return AccountState(
        wallet_balance=balance,
        available_cash=balance - 100.0,
        total_unrealized_pnl=5.0,
        fetched_at=T0,
    )


def _trade(pnl: float, fee: float = 0.1) -> ClosedTrade:
    return ClosedTrade(
        symbol="BTCUSDT",
        side=Side.LONG,
        entry_price=50_000.0,
        exit_price=50_000.0 + pnl / 0.01,
        quantity=0.01,
        leverage=10,
        pnl_usdt=pnl,
        profit_percent=pnl,
        fee=fee,
        reason="take_profit_hit",
        opened_at=T0,
        closed_at=T0 + timedelta(hours=1),
    )


def test_journal_appends_and_loads_recent(tmp_path: Path) -> None:
    journal = JournalStore(tmp_path)
    journal.append("cycle_start", {"cycle": 1})
    journal.append("cycle_end", {"cycle": 1, "status": "no_candidates"})

    rows = journal.load_recent(1)
    assert len(rows) == 1
    assert rows[0]["event_type"] == "cycle_end"
    assert rows[0]["payload"]["status"] == "no_candidates"


def test_journal_rejects_unknown_event(tmp_path: Path) -> None:
    journal = JournalStore(tmp_path)
    with pytest.raises(ValueError):
        journal.append("market_data", {})


def test_projection_writes_positions_and_account(tmp_path: Path) -> None:
    projection = StateProjection(tmp_path)
    position = Position(
        symbol="ETHUSDT",
        side=Side.SHORT,
        entry_price=2_000.0,
        quantity=1.5,
        leverage=12,
        opened_at=T0,
        stop_loss=2_000.0,
        take_profit=1_900.0,
        stage=Stage.BREAK_EVEN,
        mark_price=1_980.0,
        unrealized_pnl=30.0,
    )
    projection.record_trade(_trade(2.0))
    projection.record_trade(_trade(-1.0))
    projection.write([position], _account())

    rows = projection.load_positions()
    assert rows[0]["symbol"] == "ETHUSDT"
    assert rows[0]["side"] == "SHORT"
    assert rows[0]["stage"] == "BREAK_EVEN"
    assert rows[0]["markPrice"] == 1_980.0
    assert rows[0]["notional"] == pytest.approx(2_970.0)

    account = projection.load_account()
    assert account["totalWalletBalance"] == 1_000.0
    assert account["totalTrades"] == 2
    assert account["winningTrades"] == 1
    assert account["winRate"] == pytest.approx(50.0)
    assert account["netPnL"] == pytest.approx(0.8)
    assert account["stale"] is False


def test_stale_write_keeps_last_known_snapshot(tmp_path: Path) -> None:
    projection = StateProjection(tmp_path)
    position = Position(
        symbol="BTCUSDT",
        side=Side.LONG,
        entry_price=50_000.0,
        quantity=0.01,
        leverage=10,
        opened_at=T0,
    )
    projection.write([position], _account(1_234.0))
    projection.write([], None, stale=True)

    assert [row["symbol"] for row in projection.load_positions()] == ["BTCUSDT"]
    account = projection.load_account()
    assert account["totalWalletBalance"] == 1_234.0
    assert account["stale"] is True


def test_stats_survive_restart_and_trades_are_capped(tmp_path: Path) -> None:
    projection = StateProjection(tmp_path)
    for _ in range(MAX_TRADES + 5):
        projection.record_trade(_trade(1.0))
    projection.write([], _account())

    reloaded = StateProjection(tmp_path)
    assert reloaded.load_account()["totalTrades"] == MAX_TRADES + 5
    reloaded.record_trade(_trade(-1.0))
    reloaded.write([], _account())
    assert reloaded.load_account()["losingTrades"] == 1
    assert len(reloaded._load_list("trades.json")) == MAX_TRADES
