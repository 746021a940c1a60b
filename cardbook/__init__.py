"""Backend package: DB models, stores, OCR, ingestion pipelines, API.

Business cards are uploaded, read with OCR, structured by a language model
and filed as contacts owned by the uploading user.
"""
