"""Image upload and storage for message attachments.

Images are sent inline (base64) with chat messages and uploaded before the
message is persisted. The configured backend is either local disk (metadata
in DuckDB, served by this package's router) or an S3 bucket.

Supported types: jpeg, png, gif, webp.
"""
