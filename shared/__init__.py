# =============================================================================
# Station Inference - Shared Package
# =============================================================================
# Request, response and stream-event models used by both the server and the
# client.
# =============================================================================
