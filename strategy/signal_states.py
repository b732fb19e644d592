from __future__ import annotations
from typing import TYPE_CHECKING, List
from abc import ABC, abstractmethod

if TYPE_CHECKING:
    from analytics.spread import SpreadSnapshot
    from .signal_manager import ArbitrageStrategy, Transition


class SignalStateProcessor(ABC):
    def __init__(self, strategy: ArbitrageStrategy):
        self.strategy = strategy
        self.runtime = strategy.runtime

    @abstractmethod
    def process(self, spread: SpreadSnapshot) -> List[Transition]:
        pass

    def _transition(self, from_state: str, to_state: str, action: str, **kwargs) -> Transition:
        from .signal_manager import Transition
        return Transition(from_state=from_state, to_state=to_state, action=action, **kwargs)


class IdleState(SignalStateProcessor):
    def process(self, spread: SpreadSnapshot) -> List[Transition]:
        if not self.runtime.enabled:
            return []
        signal = self.strategy.build_signal(spread)
        if signal is None:
            return []
        self.runtime.signal = signal
        if not signal.can_execute:
            return [self._transition('idle', 'signal_pending', 'signal', signal=signal)]
        self.strategy.publish(signal)
        return [self._transition('idle', 'signal_pending', 'open', signal=signal)]


class SignalPendingState(SignalStateProcessor):
    def process(self, spread: SpreadSnapshot) -> List[Transition]:
        if not self.strategy.discard_stale_signal():
            return []
        transitions = [self._transition('signal_pending', 'idle', 'discard', reason='stale')]
        transitions.extend(IdleState(self.strategy).process(spread))
        return transitions


class PositionOpenState(SignalStateProcessor):
    def process(self, spread: SpreadSnapshot) -> List[Transition]:
        reason = self.strategy.close_reason_for(spread)
        if reason is None:
            return []
        return [self._transition('position_open', 'idle', 'close', reason=reason, signal=self.runtime.signal)]
