from typing import Any, Mapping, Optional
import logging
from config import config


logger = logging.getLogger(__name__)


class InsufficientMarginError(Exception):
    def __init__(self, required: float, available: float):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient balance: required margin {required:.4f} > available {available:.4f}")


class RiskManager:
    def __init__(self, settings: Optional[Mapping[str, Any]] = None, leverage: Optional[int] = None):
        risk_cfg = settings if settings is not None else config.section('risk')
        self.auto_volume_enabled = bool(risk_cfg.get('auto_volume_enabled', False))
        self.auto_volume_pct = float(risk_cfg.get('auto_volume_pct', 90))
        self.auto_volume_max_usd = float(risk_cfg.get('auto_volume_max_usd', 3500))
        self.min_balance_usd = float(risk_cfg.get('min_balance_usd', 0.5))
        self.leverage = int(leverage or config.section('exchange').get('leverage', 10))

    def calculate_auto_volume(self, available_balance: Optional[float], leverage: Optional[int] = None) -> float:
        """Notional in USD sized from the available balance; 0 when the balance is too small."""
        if available_balance is None or available_balance < self.min_balance_usd:
            logger.warning("Available balance %s below minimum %.2f; sizing to zero",
                           available_balance, self.min_balance_usd)
            return 0.0
        lev = leverage or self.leverage
        volume = available_balance * lev * self.auto_volume_pct / 100.0
        return min(volume, self.auto_volume_max_usd)

    def required_margin(self, volume_usd: float, leverage: Optional[int] = None) -> float:
        lev = leverage or self.leverage
        return volume_usd / lev if lev > 0 else volume_usd

    def check_margin(self, volume_usd: float, available_balance: float, leverage: Optional[int] = None) -> None:
        required = self.required_margin(volume_usd, leverage)
        if required > available_balance:
            raise InsufficientMarginError(required, available_balance)
