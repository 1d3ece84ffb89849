# =============================================================================
# FORECAST METRIC ENGINE - UI DATA ADAPTERS
# =============================================================================
