"""One control-loop cycle: refresh, protect, ratchet, rotate, enter, project."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from time import perf_counter

from perp_trader.ai.deepseek_client import DeepSeekOracle
from perp_trader.ai.oracle import ScannerOnlyOracle, SignalOracle, SupervisedOracle
from perp_trader.ai.schemas import MarketContext
from perp_trader.config import RiskParameters, Settings
from perp_trader.data.binance import MarketDataClient
from perp_trader.errors import (
    GatewayError,
    InsufficientMarginError,
    OrderRejectedError,
    StateInvariantViolation,
)
from perp_trader.exec.asterdex import AsterDexGateway
from perp_trader.exec.gateway import ExchangeGateway, RetryingGateway
from perp_trader.exec.paper import PaperGateway
from perp_trader.journal.projection import StateProjection
from perp_trader.journal.store import JournalStore
from perp_trader.risk.precision import PrecisionValidator
from perp_trader.risk.rotation import RotationPolicy
from perp_trader.risk.sizing import PositionSizer
from perp_trader.risk.stops import StopLossStateMachine
from perp_trader.state.store import PositionStore
from perp_trader.strategy.scanner import OpportunityScanner, Scanner
from perp_trader.types import (
    AccountState,
    ClosedTrade,
    CloseIntent,
    CycleResult,
    Intent,
    Order,
    OrderAck,
    Position,
    PositionKey,
    ScanCandidate,
    Side,
    SignalAction,
    Stage,
    StageAdvance,
    StopLossUpdate,
    TakeProfitUpdate,
    TradeSignal,
)
from perp_trader.utils.logging import get_logger, log_risk_event, log_stage_transition

_STOP = "STOP_MARKET"
_TAKE_PROFIT = "TAKE_PROFIT_MARKET"
_MARGIN_RETRY_FRACTION = 0.95


class TradingEngine:
    """Drive every subsystem once per ``run_cycle`` call.

    The engine is the only caller of the position store's mutators. Orders
    are submitted one at a time and each is confirmed before the store is
    updated, so a failed submission always leaves the prior state in place.
    """

    def __init__(
        self,
        params: RiskParameters,
        gateway: ExchangeGateway,
        oracle: SignalOracle,
        scanner: Scanner,
        journal: JournalStore,
        projection: StateProjection,
        *,
        store: PositionStore | None = None,
        validator: PrecisionValidator | None = None,
    ) -> None:
        self._params = params
        self._gateway = gateway
        self._oracle = oracle
        self._scanner = scanner
        self._journal = journal
        self._projection = projection
        self._store = store or PositionStore()
        self._validator = validator or PrecisionValidator(params)
        self._sizer = PositionSizer(params, self._validator)
        self._stops = StopLossStateMachine(params, self._validator, self._sizer)
        self._rotation = RotationPolicy(params, self._validator)
        self._logger = get_logger("perp_trader.engine")

        self._cycle = 0
        self._account: AccountState | None = None
        self._protective_orders: dict[PositionKey, dict[str, str]] = {}
        self._cooldown_until: dict[str, int] = {}

    @property
    def store(self) -> PositionStore:
        return self._store

    @property
    def cycle(self) -> int:
        return self._cycle

    @property
    def account(self) -> AccountState | None:
        return self._account

    def protective_orders(self, key: PositionKey) -> dict[str, str]:
        return dict(self._protective_orders.get(key, {}))

    def run_cycle(self, now: datetime | None = None) -> CycleResult:
        """Run one full cycle. Never raises; failures are reported in the result."""
        now = now or datetime.now(timezone.utc)
        started = perf_counter()
        self._cycle += 1
        result = CycleResult(status="unknown", cycle=self._cycle)
        self._journal.append("cycle_start", {"cycle": self._cycle, "at": now.isoformat()})

        try:
            try:
                account = self._gateway.get_account()
                exchange_positions = self._gateway.get_open_positions()
            except GatewayError as exc:
                self._logger.warning("exchange_unreachable", error=str(exc), cycle=self._cycle)
                result.errors.append(f"exchange_unreachable: {exc}")
                self._account = _mark_stale(self._account)
                self._projection.write(self._store.snapshot(), self._account, stale=True)
                return self._finish(result, started, status="exchange_unreachable")

            self._account = account
            reconciled = self._store.reconcile(exchange_positions, now)
            for closed in reconciled.closed:
                self._record_external_close(closed, now, result)
            for adopted in reconciled.adopted:
                self._logger.warning(
                    "untracked_position_adopted",
                    symbol=adopted.symbol,
                    side=adopted.side.value,
                    quantity=adopted.quantity,
                )
                self._journal.append(
                    "reconcile",
                    {"action": "adopted", "symbol": adopted.symbol, "side": adopted.side.value},
                )

            marks = self._refresh_marks(now, result)
            self._manage_positions(marks, now, result)

            candidates = self._scan(result)
            self._rotate(candidates, marks, now, result)

            if self._store.open_count() >= self._params.max_positions:
                status = "max_positions"
            elif not candidates:
                status = "no_candidates"
            else:
                status = self._attempt_entry(candidates, now, result)

            self._projection.write(self._store.snapshot(), self._account)
            return self._finish(result, started, status=status)

        except Exception as exc:  # noqa: BLE001 - top-level guard for loop resilience.
            self._logger.exception("cycle_failed", error=str(exc), cycle=self._cycle)
            self._journal.append("error", {"cycle": self._cycle, "error": str(exc)})
            result.errors.append(str(exc))
            return self._finish(result, started, status="failed")

    def _refresh_marks(self, now: datetime, result: CycleResult) -> dict[PositionKey, float]:
        marks: dict[PositionKey, float] = {}
        symbols = sorted({key[0] for key in self._store.keys()})
        for symbol in symbols:
            try:
                mark = self._gateway.get_mark_price(symbol)
            except GatewayError as exc:
                self._logger.warning("mark_unavailable", symbol=symbol, error=str(exc))
                result.errors.append(f"{symbol}: mark_unavailable: {exc}")
                continue
            for key in self._store.keys():
                if key[0] == symbol:
                    self._store.observe_mark(key, mark, now)
                    marks[key] = mark
        return marks

    def _manage_positions(
        self,
        marks: dict[PositionKey, float],
        now: datetime,
        result: CycleResult,
    ) -> None:
        for position in self._store.snapshot():
            mark = marks.get(position.key)
            if mark is None:
                continue
            try:
                if position.stop_loss is None or position.take_profit is None:
                    self._protect(position, mark, result)
                    refreshed = self._store.get(position.key)
                    if refreshed is None:
                        continue
                    position = refreshed
                for intent in self._stops.evaluate(position, mark, now, self._cycle):
                    result.intents.append(intent)
                    if not self._execute(intent, mark, now, result):
                        break
            except Exception as exc:  # noqa: BLE001 - isolate per-symbol failures.
                self._logger.exception("position_update_failed", symbol=position.symbol)
                result.errors.append(f"{position.symbol}: {exc}")

    def _execute(self, intent: Intent, mark: float, now: datetime, result: CycleResult) -> bool:
        """Submit one intent and commit it. Returns False when the position is gone."""
        if isinstance(intent, CloseIntent):
            try:
                self._close(intent, mark, now, result)
            except OrderRejectedError as exc:
                # A protective order already flattened it; the next reconcile records the exit.
                self._logger.warning("close_rejected", symbol=intent.key[0], error=str(exc))
                result.warnings.append(f"{intent.key[0]}: close_rejected: {exc}")
            return False
        if isinstance(intent, StageAdvance):
            before = self._store.get(intent.key)
            after = self._store.advance_stage(intent.key, intent.target_stage)
            if before is not None:
                self._log_stage(before, after, intent.reason)
            return True
        if isinstance(intent, StopLossUpdate):
            self._update_stop(intent, result)
            return True
        if isinstance(intent, TakeProfitUpdate):
            self._update_take_profit(intent, result)
            return True
        return True

    def _update_stop(self, intent: StopLossUpdate, result: CycleResult) -> None:
        before = self._store.get(intent.key)
        if before is None:
            return
        try:
            self._store.check_stop_loss(intent.key, intent.new_stop, intent.target_stage)
        except StateInvariantViolation as exc:
            self._discard(before, "stop_loss", str(exc), result)
            return

        check = self._validator.validate(before.symbol, before.quantity, intent.new_stop)
        if not check.valid:
            self._discard(before, "stop_loss", ",".join(check.errors), result)
            return

        order = self._protective_order(before, _STOP, check.quantity, intent.new_stop)
        ack = self._gateway.place_order(order)
        result.orders.append(_order_row(order, ack.order_id, ack.status))
        self._replace_protective(before.key, _STOP, ack.order_id, result)

        after = self._store.apply_stop_loss(intent.key, intent.new_stop, intent.target_stage)
        self._journal.append(
            "stage_transition",
            {
                "symbol": after.symbol,
                "side": after.side.value,
                "from_stage": before.stage.name,
                "to_stage": after.stage.name,
                "old_stop": before.stop_loss,
                "new_stop": after.stop_loss,
                "reason": intent.reason,
            },
        )
        self._log_stage(before, after, intent.reason)

    def _update_take_profit(self, intent: TakeProfitUpdate, result: CycleResult) -> None:
        before = self._store.get(intent.key)
        if before is None:
            return
        try:
            self._store.check_take_profit(intent.key, intent.new_take_profit)
        except StateInvariantViolation as exc:
            self._discard(before, "take_profit", str(exc), result)
            return

        check = self._validator.validate(before.symbol, before.quantity, intent.new_take_profit)
        if not check.valid:
            self._discard(before, "take_profit", ",".join(check.errors), result)
            return

        order = self._protective_order(before, _TAKE_PROFIT, check.quantity, intent.new_take_profit)
        ack = self._gateway.place_order(order)
        result.orders.append(_order_row(order, ack.order_id, ack.status))
        self._replace_protective(before.key, _TAKE_PROFIT, ack.order_id, result)
        self._store.apply_take_profit(intent.key, intent.new_take_profit, intent.cycle)
        self._journal.append(
            "take_profit_update",
            {
                "symbol": before.symbol,
                "side": before.side.value,
                "old_take_profit": before.take_profit,
                "new_take_profit": intent.new_take_profit,
            },
        )

    def _protect(self, position: Position, mark: float, result: CycleResult) -> None:
        """Place whichever protective order a position is missing."""
        brackets = self._sizer.initial_brackets(
            position.side,
            position.entry_price,
            position.leverage,
            is_scalper=position.is_scalper,
        )
        stop = position.stop_loss
        take_profit = position.take_profit
        sign = position.side.sign

        if stop is None:
            candidate = self._validator.round_price(position.symbol, brackets.stop_loss)
            if (mark - candidate) * sign > 0:
                order = self._protective_order(position, _STOP, position.quantity, candidate)
                ack = self._gateway.place_order(order)
                result.orders.append(_order_row(order, ack.order_id, ack.status))
                self._replace_protective(position.key, _STOP, ack.order_id, result)
                stop = candidate
            else:
                result.warnings.append(f"{position.symbol}: initial_stop_beyond_mark")

        if take_profit is None:
            candidate = self._validator.round_price(position.symbol, brackets.take_profit)
            if (candidate - mark) * sign > 0:
                order = self._protective_order(position, _TAKE_PROFIT, position.quantity, candidate)
                ack = self._gateway.place_order(order)
                result.orders.append(_order_row(order, ack.order_id, ack.status))
                self._replace_protective(position.key, _TAKE_PROFIT, ack.order_id, result)
                take_profit = candidate

        if position.stage is Stage.INITIAL:
            self._store.set_initial_brackets(position.key, stop, take_profit)
        elif take_profit is not None and position.take_profit is None:
            self._store.apply_take_profit(position.key, take_profit, self._cycle)

    def _close(self, intent: CloseIntent, mark: float, now: datetime, result: CycleResult) -> None:
        position = self._store.get(intent.key)
        if position is None:
            return
        order = Order(
            symbol=position.symbol,
            side=position.side.exit_order_side,
            order_type="MARKET",
            quantity=position.quantity,
            reduce_only=True,
            client_order_id=_client_order_id(),
        )
        ack = self._gateway.place_order(order)
        result.orders.append(_order_row(order, ack.order_id, ack.status, reason=intent.reason))
        self._store.close(intent.key)
        self._cancel_protective(intent.key, result)

        exit_price = ack.avg_price or mark
        trade = self._closed_trade(position, exit_price, intent.reason, now)
        self._projection.record_trade(trade)
        self._cooldown_until[position.symbol] = self._cycle + self._params.reentry_cooldown_cycles
        self._journal.append(
            "position_closed",
            {
                "symbol": trade.symbol,
                "side": trade.side.value,
                "reason": trade.reason,
                "exit_price": trade.exit_price,
                "pnl_usdt": trade.pnl_usdt,
                "profit_percent": trade.profit_percent,
            },
        )
        self._logger.info(
            "position_closed",
            symbol=trade.symbol,
            side=trade.side.value,
            reason=trade.reason,
            pnl_usdt=round(trade.pnl_usdt, 4),
        )

    def _record_external_close(
        self,
        position: Position,
        now: datetime,
        result: CycleResult,
    ) -> None:
        exit_price = position.mark_price or position.entry_price
        sign = position.side.sign
        reason = "closed_on_exchange"
        if position.stop_loss is not None and (exit_price - position.stop_loss) * sign <= 0:
            reason = "stop_loss_hit"
        elif position.take_profit is not None and (exit_price - position.take_profit) * sign >= 0:
            reason = "take_profit_hit"
        self._cancel_protective(position.key, result)
        trade = self._closed_trade(position, exit_price, reason, now)
        self._projection.record_trade(trade)
        self._cooldown_until[position.symbol] = self._cycle + self._params.reentry_cooldown_cycles
        self._journal.append(
            "position_closed",
            {
                "symbol": trade.symbol,
                "side": trade.side.value,
                "reason": reason,
                "exit_price": exit_price,
                "pnl_usdt": trade.pnl_usdt,
                "external": True,
            },
        )

    def _scan(self, result: CycleResult) -> list[ScanCandidate]:
        try:
            return self._scanner.rank_candidates()
        except Exception as exc:  # noqa: BLE001 - entries are optional, positions are not.
            self._logger.warning("scan_failed", error=str(exc))
            result.warnings.append(f"scan_failed: {exc}")
            return []

    def _rotate(
        self,
        candidates: list[ScanCandidate],
        marks: dict[PositionKey, float],
        now: datetime,
        result: CycleResult,
    ) -> None:
        decision = self._rotation.select(self._store.snapshot(), candidates, marks, now)
        if decision is None:
            return
        key = decision.intent.key
        log_risk_event(
            self._logger,
            event_type="rotation",
            action="close_position",
            symbol=key[0],
            side=key[1].value,
            profit_percent=round(decision.profit_percent, 4),
            candidate=decision.candidate.symbol,
            candidate_score=decision.candidate.score,
        )
        self._journal.append(
            "rotation",
            {
                "symbol": key[0],
                "side": key[1].value,
                "profit_percent": decision.profit_percent,
                "candidate": decision.candidate.symbol,
                "candidate_score": decision.candidate.score,
            },
        )
        result.intents.append(decision.intent)
        try:
            self._close(decision.intent, marks[key], now, result)
        except GatewayError as exc:
            self._logger.warning("rotation_close_failed", symbol=key[0], error=str(exc))
            result.errors.append(f"{key[0]}: rotation_close_failed: {exc}")
            return
        self._refresh_account(result)

    def _attempt_entry(
        self,
        candidates: list[ScanCandidate],
        now: datetime,
        result: CycleResult,
    ) -> str:
        candidate = self._pick_candidate(candidates)
        if candidate is None:
            return "no_candidates"

        signal = self._signal_for(candidate)
        self._journal.append(
            "signal",
            {
                "symbol": signal.symbol,
                "action": signal.action.value,
                "confidence": signal.confidence,
                "is_scalper": signal.is_scalper,
                "rationale": signal.rationale,
            },
        )
        side = signal.action.side
        if side is None:
            return "no_signal"
        if self._account is None:
            return "no_account"

        try:
            price = self._gateway.get_mark_price(signal.symbol)
        except GatewayError as exc:
            result.errors.append(f"{signal.symbol}: mark_unavailable: {exc}")
            return "entry_failed"

        sizing = self._sizer.size(
            signal,
            self._account,
            price,
            open_positions=self._store.open_count(),
            open_scalpers=self._store.scalper_count(),
        )
        if not sizing.accepted:
            return self._reject_entry(signal, sizing.reasons, result)

        check = self._validator.validate(signal.symbol, sizing.quantity, price)
        if not check.valid:
            return self._reject_entry(signal, check.errors, result)

        try:
            self._gateway.set_leverage(signal.symbol, sizing.leverage)
            order, ack = self._place_entry(
                signal.symbol,
                side,
                check.quantity,
                sizing.leverage,
                price,
                result,
            )
        except GatewayError as exc:
            self._logger.warning("entry_order_failed", symbol=signal.symbol, error=str(exc))
            result.errors.append(f"{signal.symbol}: entry_order_failed: {exc}")
            return "entry_failed"
        result.orders.append(_order_row(order, ack.order_id, ack.status))

        entry_price = ack.avg_price or price
        position = self._store.open(
            Position(
                symbol=signal.symbol,
                side=side,
                entry_price=entry_price,
                quantity=order.quantity,
                leverage=sizing.leverage,
                opened_at=now,
                is_scalper=signal.is_scalper,
                mark_price=entry_price,
            )
        )
        self._open_brackets(position, signal, entry_price, result)

        self._journal.append(
            "position_opened",
            {
                "symbol": position.symbol,
                "side": position.side.value,
                "entry_price": entry_price,
                "quantity": order.quantity,
                "leverage": sizing.leverage,
                "margin_used": order.quantity * entry_price / sizing.leverage,
                "is_scalper": signal.is_scalper,
            },
        )
        self._logger.info(
            "position_opened",
            symbol=position.symbol,
            side=position.side.value,
            leverage=sizing.leverage,
            quantity=order.quantity,
            entry_price=entry_price,
        )
        return "opened"

    def _place_entry(
        self,
        symbol: str,
        side: Side,
        quantity: float,
        leverage: int,
        price: float,
        result: CycleResult,
    ) -> tuple[Order, OrderAck]:
        """Submit the entry market order, re-sizing once if margin is short."""
        order = _entry_order(symbol, side, quantity)
        try:
            return order, self._gateway.place_order(order)
        except InsufficientMarginError as exc:
            account = self._gateway.get_account()
            self._account = account
            margin = account.available_cash * _MARGIN_RETRY_FRACTION
            check = self._validator.validate(symbol, margin * leverage / price, price)
            if not check.valid or check.notional / leverage > account.available_cash:
                raise
            self._logger.warning(
                "entry_resized_for_margin",
                symbol=symbol,
                quantity=quantity,
                resized_quantity=check.quantity,
                error=str(exc),
            )
            result.warnings.append(f"{symbol}: entry_resized_for_margin")
            order = _entry_order(symbol, side, check.quantity)
            return order, self._gateway.place_order(order)

    def _open_brackets(
        self,
        position: Position,
        signal: TradeSignal,
        entry_price: float,
        result: CycleResult,
    ) -> None:
        brackets = self._sizer.initial_brackets(
            position.side,
            entry_price,
            position.leverage,
            is_scalper=position.is_scalper,
            suggested_stop=signal.stop_loss,
            suggested_take_profit=signal.take_profit,
        )
        stop = self._validator.round_price(position.symbol, brackets.stop_loss)
        take_profit = self._validator.round_price(position.symbol, brackets.take_profit)
        placed_stop: float | None = None
        placed_tp: float | None = None
        for order_type, price in ((_STOP, stop), (_TAKE_PROFIT, take_profit)):
            order = self._protective_order(position, order_type, position.quantity, price)
            try:
                ack = self._gateway.place_order(order)
            except GatewayError as exc:
                # Retried by the next cycle's protection pass.
                self._logger.warning(
                    "protective_order_failed",
                    symbol=position.symbol,
                    order_type=order_type,
                    error=str(exc),
                )
                result.warnings.append(f"{position.symbol}: {order_type.lower()}_not_placed")
                continue
            result.orders.append(_order_row(order, ack.order_id, ack.status))
            self._replace_protective(position.key, order_type, ack.order_id, result)
            if order_type == _STOP:
                placed_stop = price
            else:
                placed_tp = price
        self._store.set_initial_brackets(position.key, placed_stop, placed_tp)

    def _pick_candidate(self, candidates: list[ScanCandidate]) -> ScanCandidate | None:
        for candidate in candidates:
            if self._store.holds_symbol(candidate.symbol):
                continue
            if self._cooldown_until.get(candidate.symbol, 0) > self._cycle:
                continue
            if not self._validator.has_rule(candidate.symbol):
                continue
            return candidate
        return None

    def _signal_for(self, candidate: ScanCandidate) -> TradeSignal:
        if candidate.is_scalper and self._params.scalper_skip_oracle_validation:
            return TradeSignal(
                symbol=candidate.symbol,
                action=candidate.action,
                confidence=candidate.confidence,
                rationale="scalper_pullback_entry",
                is_scalper=True,
                pullback_percent=candidate.pullback_percent,
                rsi=candidate.rsi,
                score=candidate.score,
            )

        suggested = candidate.action.value if candidate.action is not SignalAction.CLOSE else "HOLD"
        context = MarketContext(
            symbol=candidate.symbol,
            price=candidate.price,
            score=candidate.score,
            suggested_action=suggested,
            rsi=candidate.rsi,
            pullback_percent=candidate.pullback_percent,
            open_positions=sorted({key[0] for key in self._store.keys()}),
            available_cash=self._account.available_cash if self._account else 0.0,
            reasons=list(candidate.reasons),
        )
        return self._oracle.request_decision(context)

    def _reject_entry(self, signal: TradeSignal, reasons: list[str], result: CycleResult) -> str:
        self._logger.info("entry_rejected", symbol=signal.symbol, reasons=reasons)
        self._journal.append(
            "entry_rejected",
            {"symbol": signal.symbol, "confidence": signal.confidence, "reasons": reasons},
        )
        result.warnings.extend(f"{signal.symbol}: {reason}" for reason in reasons)
        return "entry_rejected"

    def _protective_order(
        self,
        position: Position,
        order_type: str,
        quantity: float,
        stop_price: float,
    ) -> Order:
        return Order(
            symbol=position.symbol,
            side=position.side.exit_order_side,
            order_type=order_type,
            quantity=quantity,
            stop_price=stop_price,
            reduce_only=True,
            client_order_id=_client_order_id(),
        )

    def _replace_protective(
        self,
        key: PositionKey,
        order_type: str,
        order_id: str,
        result: CycleResult,
    ) -> None:
        orders = self._protective_orders.setdefault(key, {})
        previous = orders.get(order_type)
        orders[order_type] = order_id
        if previous is None:
            return
        try:
            self._gateway.cancel_order(key[0], previous)
        except GatewayError as exc:
            self._logger.warning(
                "cancel_order_failed",
                symbol=key[0],
                order_id=previous,
                error=str(exc),
            )
            result.warnings.append(f"{key[0]}: cancel_failed:{previous}")

    def _cancel_protective(self, key: PositionKey, result: CycleResult) -> None:
        for order_id in self._protective_orders.pop(key, {}).values():
            try:
                self._gateway.cancel_order(key[0], order_id)
            except GatewayError as exc:
                # Exchanges usually drop reduce-only orders once the position is flat.
                self._logger.debug(
                    "cancel_order_skipped",
                    symbol=key[0],
                    order_id=order_id,
                    error=str(exc),
                )

    def _refresh_account(self, result: CycleResult) -> None:
        try:
            self._account = self._gateway.get_account()
        except GatewayError as exc:
            result.warnings.append(f"account_refresh_failed: {exc}")

    def _discard(self, position: Position, what: str, reason: str, result: CycleResult) -> None:
        log_risk_event(
            self._logger,
            event_type="stop_invariant_violation",
            action=f"discard_{what}_update",
            symbol=position.symbol,
            side=position.side.value,
            reason=reason,
        )
        result.warnings.append(f"{position.symbol}: {what}_update_discarded: {reason}")

    def _log_stage(self, before: Position, after: Position, reason: str) -> None:
        if before.stage is after.stage and before.stop_loss == after.stop_loss:
            return
        log_stage_transition(
            self._logger,
            symbol=after.symbol,
            side=after.side.value,
            from_stage=before.stage.name,
            to_stage=after.stage.name,
            stop_loss=after.stop_loss,
            reason=reason,
        )

    def _closed_trade(
        self,
        position: Position,
        exit_price: float,
        reason: str,
        now: datetime,
    ) -> ClosedTrade:
        notional = (position.entry_price + exit_price) * position.quantity
        return ClosedTrade(
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            quantity=position.quantity,
            leverage=position.leverage,
            pnl_usdt=position.pnl_usdt(exit_price),
            profit_percent=position.profit_percent(exit_price),
            fee=notional * self._params.round_trip_fee_rate / 2,
            reason=reason,
            opened_at=position.opened_at,
            closed_at=now,
        )

    def _finish(self, result: CycleResult, started: float, *, status: str) -> CycleResult:
        result.status = status
        result.elapsed_ms = (perf_counter() - started) * 1000
        result.open_positions = self._store.open_count()
        self._journal.append(
            "cycle_end",
            {
                "cycle": result.cycle,
                "status": status,
                "elapsed_ms": result.elapsed_ms,
                "open_positions": result.open_positions,
                "orders": len(result.orders),
                "errors": result.errors,
            },
        )
        return result


def _mark_stale(account: AccountState | None) -> AccountState | None:
    if account is None:
        return None
    return AccountState(
        wallet_balance=account.wallet_balance,
        available_cash=account.available_cash,
        total_unrealized_pnl=account.total_unrealized_pnl,
        fetched_at=account.fetched_at,
        stale=True,
    )


def _client_order_id() -> str:
    return f"pt-{uuid.uuid4().hex[:24]}"


def _entry_order(symbol: str, side: Side, quantity: float) -> Order:
    return Order(
        symbol=symbol,
        side=side.entry_order_side,
        order_type="MARKET",
        quantity=quantity,
        client_order_id=_client_order_id(),
    )


def _order_row(order: Order, order_id: str, status: str, **extra: object) -> dict[str, object]:
    return {
        "order_id": order_id,
        "symbol": order.symbol,
        "side": order.side,
        "type": order.order_type,
        "quantity": order.quantity,
        "stop_price": order.stop_price,
        "reduce_only": order.reduce_only,
        "status": status,
        **extra,
    }


def build_engine(settings: Settings, *, dry_run: bool = False) -> TradingEngine:
    """Wire the engine from settings. Paper mode and dry runs use the paper exchange."""
    params = settings.risk
    market_data = MarketDataClient()

    inner: ExchangeGateway
    if settings.is_paper_mode or dry_run:
        inner = PaperGateway(
            settings.state_dir,
            market_data.fetch_mark_price,
            fee_rate=params.round_trip_fee_rate / 2,
            initial_equity=settings.paper_initial_equity,
        )
    else:
        settings.require_live_credentials()
        inner = AsterDexGateway(settings)
    gateway = RetryingGateway(inner, max_retries=params.max_retries)

    primary = DeepSeekOracle(settings) if settings.deepseek_api_key else None
    oracle = SupervisedOracle(
        primary,
        ScannerOnlyOracle(),
        failure_threshold=params.oracle_failure_threshold,
        reconnect_interval=params.oracle_reconnect_interval,
    )
    scanner = OpportunityScanner(
        params,
        market_data,
        settings.trading_pairs,
        top_n=settings.scanner_top_results,
    )
    return TradingEngine(
        params,
        gateway,
        oracle,
        scanner,
        JournalStore(settings.journal_dir),
        StateProjection(settings.state_dir),
    )
