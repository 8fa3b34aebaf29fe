"""OANDA candle synchronizer.

Fetches historical daily/weekly/monthly candles from the OANDA v20 REST API
and upserts them into a local relational database.

- market_data: OANDA client, pagination, retry and record normalization
- storage: SQLAlchemy-backed candle store (one transaction per job)
- sync: job orchestration across instruments x granularities
- cli: command line entrypoint
"""

__version__ = "0.1.0"
