# =============================================================================
# Services Package — Pricing, Budget, Routing and Provider Adapters
# =============================================================================
