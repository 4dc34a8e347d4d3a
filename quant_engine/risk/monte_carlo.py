"""
Monte Carlo Risk Simulation
===========================
Fat-tailed Monte Carlo simulation of a single stop-loss / take-profit trade.

- Student's t shocks (df = 3) for crypto-like tails
- GARCH(1,1) volatility clustering
- Round-trip trading costs subtracted from every path
- Risk metrics: EV, win rate, Sharpe, max drawdown, VaR, P&L percentiles
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional, Tuple
import logging

import numpy as np

from ..config import MonteCarloConfig
from ..exceptions import InputValidationError

logger = logging.getLogger(__name__)


@dataclass
class SimulationParams:
    """One simulation request. Volatility is hourly, in percent."""
    direction: str = 'long'  # 'long' or 'short'
    volatility: float = 2.0
    stop_loss_percent: float = 2.0
    take_profit_percent: float = 4.0
    drift: float = 0.0
    simulations: int = 500
    time_horizon: int = 24

    def clamped(self) -> 'SimulationParams':
        """Clamp every parameter to its supported range."""
        if self.direction not in ('long', 'short'):
            raise InputValidationError(f"Monte Carlo direction must be 'long' or 'short', got {self.direction!r}")
        return replace(
            self,
            simulations=int(_clamp(_or_default(self.simulations, 500), 100, 1000)),
            time_horizon=int(_clamp(_or_default(self.time_horizon, 24), 1, 48)),
            volatility=_clamp(_or_default(self.volatility, 2.0, allow_zero=True), 0.0, 50.0),
            drift=_clamp(_or_default(self.drift, 0.0, allow_zero=True), -0.01, 0.01),
            stop_loss_percent=_clamp(_or_default(self.stop_loss_percent, 2.0), 1.0, 5.0),
            take_profit_percent=_clamp(_or_default(self.take_profit_percent, 4.0), 2.0, 10.0),
        )


def _or_default(value, default, allow_zero: bool = False):
    if value is None or isinstance(value, bool):
        return default
    try:
        value = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(value) or (value == 0 and not allow_zero):
        return default
    return value


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass
class ProfitDistribution:
    p10: float = 0.0
    p25: float = 0.0
    p50: float = 0.0
    p75: float = 0.0
    p90: float = 0.0


@dataclass
class MonteCarloResult:
    """Distribution of simulated trade P&L (percent)."""
    expected_value: float
    win_rate: float
    max_drawdown: float
    sharpe_ratio: float
    var95: float
    var99: float
    profit_distribution: ProfitDistribution
    recommendation: str  # 'strong_buy', 'buy', 'hold', 'avoid'
    recommendation_reason: str
    simulations: int
    time_horizon: int
    trading_cost_applied: float
    computed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class MonteCarloAnalysis:
    """Long and short scenarios with the preferred direction."""
    long_scenario: MonteCarloResult
    short_scenario: MonteCarloResult
    recommended_direction: str  # 'long', 'short', 'none'
    edge_strength: int
    should_trade: bool
    reason: str


@dataclass
class TradeValidation:
    valid: bool
    sharpe: float
    ev: float
    reason: str


class MonteCarloSimulator:
    """
    Monte Carlo trade simulator.

    Owns its random generator; pass a seed through MonteCarloConfig for
    reproducible runs.
    """

    START_PRICE = 100.0

    def __init__(self, config: MonteCarloConfig = None, rng: Optional[np.random.Generator] = None):
        self.config = config or MonteCarloConfig()
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)

    def _normal(self, size: int) -> np.ndarray:
        """Box-Muller standard normals; zero uniforms are redrawn."""
        u = self.rng.random(size)
        v = self.rng.random(size)
        for arr in (u, v):
            zeros = arr == 0
            while zeros.any():
                arr[zeros] = self.rng.random(int(zeros.sum()))
                zeros = arr == 0
        return np.sqrt(-2.0 * np.log(u)) * np.cos(2.0 * np.pi * v)

    def student_t(self, size: int) -> np.ndarray:
        """Student's t draws as normal / sqrt(chi2 / df), clamped to +/-10."""
        df = self.config.degrees_of_freedom
        normal = self._normal(size)
        chi_squared = np.zeros(size)
        for _ in range(df):
            chi_squared += self._normal(size) ** 2

        tiny = chi_squared < 0.001
        draws = normal / np.sqrt(np.maximum(chi_squared, 0.001) / df)
        draws = np.where(tiny, np.where(normal > 0, 5.0, -5.0), draws)
        return np.clip(draws, -10.0, 10.0)

    def garch_multiplier(self, previous_return: np.ndarray, previous_multiplier: np.ndarray) -> np.ndarray:
        """GARCH(1,1) volatility multiplier (sigma, long-run variance 1)."""
        alpha, beta = self.config.garch_alpha, self.config.garch_beta
        r = np.where(np.isfinite(previous_return), previous_return, 0.0)
        m = np.where(np.isfinite(previous_multiplier) & (previous_multiplier > 0), previous_multiplier, 1.0)
        r = np.clip(r, -0.5, 0.5)
        m = np.clip(m, 0.5, 3.0)

        omega = 1 - alpha - beta
        variance = np.clip(omega + alpha * r * r + beta * m * m, 0.25, 9.0)
        return np.sqrt(variance)

    def simulate(self, direction: str, volatility: float, stop_loss_percent: float,
                 take_profit_percent: float, drift: float = 0.0, simulations: int = None,
                 time_horizon: int = None) -> MonteCarloResult:
        """Simulate one trade direction and summarize the P&L distribution."""
        params = SimulationParams(
            direction=direction,
            volatility=volatility,
            stop_loss_percent=stop_loss_percent,
            take_profit_percent=take_profit_percent,
            drift=drift,
            simulations=simulations if simulations is not None else self.config.simulations,
            time_horizon=time_horizon if time_horizon is not None else self.config.time_horizon,
        ).clamped()
        return self.run(params)

    def run(self, params: SimulationParams) -> MonteCarloResult:
        n = params.simulations
        sl, tp = params.stop_loss_percent, params.take_profit_percent
        short = params.direction == 'short'
        sign = -1.0 if short else 1.0
        step_vol = params.volatility / 100
        step_drift = -params.drift if short else params.drift
        cost = self.config.trading_cost_pct * 2

        price = np.full(n, self.START_PRICE)
        pnl = np.zeros(n)
        garch = np.ones(n)
        active = np.ones(n, dtype=bool)

        for _ in range(params.time_horizon):
            if not active.any():
                break
            change = step_drift + self.student_t(n) * step_vol * garch
            garch = np.where(active, self.garch_multiplier(change, garch), garch)
            with np.errstate(over='ignore', invalid='ignore'):
                price = np.where(active, price * (1 + change), price)

            # A collapsed price is max profit for shorts, max loss for longs
            broken = active & (~np.isfinite(price) | (price <= 0))
            pnl[broken] = tp if short else -sl
            active &= ~broken

            current = (price - self.START_PRICE) / self.START_PRICE * 100 * sign
            stopped = active & (current <= -sl)
            pnl[stopped] = -sl
            active &= ~stopped

            taken = active & (current >= tp)
            pnl[taken] = tp
            active &= ~taken

        final = (price - self.START_PRICE) / self.START_PRICE * 100 * sign
        pnl = np.where(active, np.clip(final, -sl, tp), pnl)
        pnl = pnl - cost

        return self._statistics(pnl, params, cost)

    def _statistics(self, results: np.ndarray, params: SimulationParams, cost: float) -> MonteCarloResult:
        if results.size == 0:
            return self._empty_result(params, cost)

        ordered = np.sort(results)
        n = ordered.size
        ev = float(results.mean())
        win_rate = float(np.count_nonzero(results > 0)) / n * 100
        std = math.sqrt(float(((results - ev) ** 2).sum()) / max(1, n - 1))
        sharpe = ev / std * math.sqrt(self.config.trades_per_year) if std > 0.001 else 0.0
        max_drawdown = max(0.0, -float(ordered[0]))

        def at(p: float) -> float:
            return float(ordered[min(n - 1, math.floor((n - 1) * p))])

        recommendation, reason = self._recommendation(ev, win_rate, sharpe, max_drawdown)
        return MonteCarloResult(
            expected_value=_safe(ev),
            win_rate=_safe(win_rate),
            max_drawdown=_safe(max_drawdown),
            sharpe_ratio=_safe(sharpe),
            var95=_safe(at(0.05)),
            var99=_safe(at(0.01)),
            profit_distribution=ProfitDistribution(
                p10=_safe(at(0.1)), p25=_safe(at(0.25)), p50=_safe(at(0.5)),
                p75=_safe(at(0.75)), p90=_safe(at(0.9)),
            ),
            recommendation=recommendation,
            recommendation_reason=reason,
            simulations=params.simulations,
            time_horizon=params.time_horizon,
            trading_cost_applied=cost,
        )

    def _recommendation(self, ev: float, win_rate: float, sharpe: float, max_dd: float) -> Tuple[str, str]:
        min_sharpe = self.config.min_sharpe
        stats = f"EV={ev:.2f}%, WR={win_rate:.0f}%, Sharpe={sharpe:.2f}"
        if ev > 1.5 and win_rate > 55 and sharpe > 1.5 and max_dd < 5:
            return 'strong_buy', f"Strong edge: {stats}"
        if ev > 0.5 and win_rate > 50 and sharpe > min_sharpe:
            return 'buy', f"Positive edge: {stats}"
        if ev > 0 and win_rate > 45 and sharpe > 0.8:
            return 'hold', f"Marginal edge: {stats} (need ≥{min_sharpe:g})"
        return 'avoid', f"Negative/insufficient edge: {stats}"

    @staticmethod
    def _empty_result(params: SimulationParams, cost: float) -> MonteCarloResult:
        sl = params.stop_loss_percent
        return MonteCarloResult(
            expected_value=0.0,
            win_rate=0.0,
            max_drawdown=sl,
            sharpe_ratio=0.0,
            var95=-sl,
            var99=-sl,
            profit_distribution=ProfitDistribution(),
            recommendation='avoid',
            recommendation_reason='No simulation results',
            simulations=params.simulations,
            time_horizon=params.time_horizon,
            trading_cost_applied=cost,
        )

    def _is_valid(self, result: MonteCarloResult) -> bool:
        return result.expected_value > 0 and result.sharpe_ratio >= self.config.min_sharpe

    def analyze(self, volatility: float, stop_loss_percent: float, take_profit_percent: float,
                drift: float = 0.0, simulations: int = None, time_horizon: int = None) -> MonteCarloAnalysis:
        """Simulate both directions and pick the one with the better Sharpe."""
        long_result = self.simulate('long', volatility, stop_loss_percent, take_profit_percent,
                                    drift, simulations, time_horizon)
        # Drift is inverted inside the simulation for shorts
        short_result = self.simulate('short', volatility, stop_loss_percent, take_profit_percent,
                                     drift, simulations, time_horizon)

        long_sharpe, short_sharpe = long_result.sharpe_ratio, short_result.sharpe_ratio
        long_valid, short_valid = self._is_valid(long_result), self._is_valid(short_result)

        if long_valid and short_valid:
            if long_sharpe > short_sharpe:
                direction, reason = 'long', f"Long preferred: Sharpe {long_sharpe:.2f} vs {short_sharpe:.2f}"
            else:
                direction, reason = 'short', f"Short preferred: Sharpe {short_sharpe:.2f} vs {long_sharpe:.2f}"
        elif long_valid:
            direction = 'long'
            reason = f"Long valid: EV={long_result.expected_value:.2f}%, Sharpe={long_sharpe:.2f}"
        elif short_valid:
            direction = 'short'
            reason = f"Short valid: EV={short_result.expected_value:.2f}%, Sharpe={short_sharpe:.2f}"
        else:
            direction = 'none'
            reason = (f"No valid edge: Long Sharpe={long_sharpe:.2f}, Short Sharpe={short_sharpe:.2f} "
                      f"(need ≥{self.config.min_sharpe:g})")

        best = max(long_sharpe, short_sharpe)
        edge = min(100.0, max(0.0, best * 40))
        return MonteCarloAnalysis(
            long_scenario=long_result,
            short_scenario=short_result,
            recommended_direction=direction,
            edge_strength=int(math.floor(edge + 0.5)),
            should_trade=direction != 'none',
            reason=reason,
        )

    def validate_trade(self, direction: str, volatility: float, stop_loss_percent: float,
                       take_profit_percent: float, drift: float = 0.0) -> TradeValidation:
        """Quick pass/fail check of one direction."""
        result = self.simulate(direction, volatility, stop_loss_percent, take_profit_percent, drift,
                               simulations=self.config.validation_simulations, time_horizon=24)
        valid = self._is_valid(result)
        stats = f"EV={result.expected_value:.2f}%, Sharpe={result.sharpe_ratio:.2f}"
        if valid:
            reason = f"MC validated: {stats}"
        else:
            reason = f"MC rejected: {stats} (need ≥{self.config.min_sharpe:g})"
        logger.debug(f"Monte Carlo {direction} validation: {reason}")
        return TradeValidation(valid=valid, sharpe=result.sharpe_ratio, ev=result.expected_value, reason=reason)


def _safe(value: float, default: float = 0.0) -> float:
    return value if math.isfinite(value) else default


def format_result(result: MonteCarloResult) -> str:
    """One-line summary of a simulation."""
    return (f"MC({result.simulations}): EV={result.expected_value:.2f}% WR={result.win_rate:.0f}% "
            f"Sharpe={result.sharpe_ratio:.2f} VaR95={result.var95:.2f}% → {result.recommendation.upper()}")


def format_analysis(analysis: MonteCarloAnalysis) -> str:
    lines: List[str] = [
        '=== MONTE CARLO ANALYSIS ===',
        f"Long:  {format_result(analysis.long_scenario)}",
        f"Short: {format_result(analysis.short_scenario)}",
        f"Recommendation: {analysis.recommended_direction.upper()} (edge: {analysis.edge_strength}/100)",
        f"Trade: {'YES' if analysis.should_trade else 'NO'} - {analysis.reason or 'No reason provided'}",
    ]
    return '\n'.join(lines)
