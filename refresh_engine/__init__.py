"""
Market Brain Refresh Engine
─────────────────────────────
Staleness-aware refresh queue for FMP data.

    from refresh_engine.engine import RefreshEngine
    engine = RefreshEngine.build(redis, get_settings())
    await engine.enqueuer.on_subscription("AAPL", [DataType.QUOTE])
"""
