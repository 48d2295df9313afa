# backend/stockroom/config.py
from __future__ import annotations
import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # DATABASE_URL wins; otherwise a SQLite file in the app's instance folder.
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///stockroom.sqlite3")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Level for the "stockroom" logger tree.
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Document number prefixes: PREFIX-YYYYMMDD-NNNN
    ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "SO")
    PURCHASE_NUMBER_PREFIX = os.environ.get("PURCHASE_NUMBER_PREFIX", "PO")
    TRANSFER_NUMBER_PREFIX = os.environ.get("TRANSFER_NUMBER_PREFIX", "TR")

    # "reject": one short stock item fails the whole order.
    # "partial": short stock items are kept as unfulfilled backorders.
    ORDER_STOCK_FAILURE_POLICY = os.environ.get("ORDER_STOCK_FAILURE_POLICY", "reject")

    # What a completed purchase does with quantity no linked backorder claimed.
    # "fifo": fill open backorders for the same variant and store, oldest first.
    # "off": leave it on hand.
    BACKORDER_ALLOCATION_STRATEGY = os.environ.get("BACKORDER_ALLOCATION_STRATEGY", "fifo")

    # run_with_retry: attempts and exponential backoff base (seconds).
    DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))
    DB_RETRY_BACKOFF = float(os.environ.get("DB_RETRY_BACKOFF", "0.1"))
