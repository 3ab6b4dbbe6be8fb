"""
DOM Replay - Orderbook analytics and time-travel replay for one instrument.

Architecture:
- datafeed/: snapshot normalization and the backend client (WebSocket + history)
- engine/: aggregation, rolling stats, anomaly detection, heatmap, replay, book engine
- ui/: DOM ladder rendering of the engine view-model (Textual TUI)
"""

__version__ = "0.1.0"
