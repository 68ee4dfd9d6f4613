from .service import TradeRelayService, calculate_stats

__all__ = ["TradeRelayService", "calculate_stats"]
