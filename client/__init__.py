# =============================================================================
# Station Inference - Client Package
# =============================================================================
# HTTP client for the local inference server: submits generation requests
# and parses the newline-delimited JSON event stream they return.
# =============================================================================
