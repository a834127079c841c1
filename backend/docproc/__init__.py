"""
docproc — asynchronous document-processing orchestration

Submits stored documents to an external OCR engine, tracks the processing
state machine, and applies HMAC-signed completion callbacks exactly once.
"""

__version__ = "1.0.0"
