"""
txn_ingestion -- Row decoding and transformation for transaction imports.

Provides the CSV/XLSX row codecs and the pure TransactionTransformer that
maps one decoded row to one canonical Transaction (or one RowError).

Architecture:
    txn_ingestion/ is a top-level package.  It performs file-format I/O
    only and never touches the database; txn_batch drives it.
"""
