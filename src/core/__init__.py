"""Core domain package for promorelay.

Core contains extraction, dedup, delivery and listener logic without any
Telethon or storage-specific code, keeping the business logic portable.
"""
