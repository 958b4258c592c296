"""
Voice Session Test Suite

Test coverage for:
    - Sentence buffering (boundaries, abbreviations, lossless concatenation)
    - Ordered synthesis queue (ordering, timeouts, close semantics)
    - Transcription link (connect, reconnect, backlog, disconnect)
    - Inference invocation and session controller wiring
    - Configuration, providers and the FastAPI service
"""
