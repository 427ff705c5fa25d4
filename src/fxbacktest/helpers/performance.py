"""Performance Helper Functions

Summary statistics over resolved simulated trades.
"""

import math


def calculate_win_rate(winning_trades: int, total_trades: int) -> float:
    """Calculate the win rate as a percentage.

    Args:
        winning_trades: Number of trades that reached the first target
        total_trades: Number of resolved trades

    Returns:
        Win rate between 0 and 100; 0 when there are no trades
    """
    if total_trades <= 0:
        return 0.0
    return winning_trades / total_trades * 100


def calculate_profit_factor(gross_win: float, gross_loss: float, winning_trades: int) -> float:
    """Calculate the profit factor (gross profit / gross loss).

    Args:
        gross_win: Sum of profits of winning trades
        gross_loss: Sum of losses of losing trades (positive number)
        winning_trades: Number of winning trades

    Returns:
        ``gross_win / gross_loss`` when there were losses, ``inf`` when there
        were only wins, 0 otherwise
    """
    if gross_loss > 0:
        return gross_win / gross_loss
    if winning_trades > 0:
        return math.inf
    return 0.0
