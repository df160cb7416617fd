# =============================================================================
# Station Inference - Server Package
# =============================================================================
# This package contains the server-side components responsible for loading
# the vision-language and pose models, normalizing conversations, running
# streamed generation sessions and relaying real-time pose frames.
# =============================================================================
