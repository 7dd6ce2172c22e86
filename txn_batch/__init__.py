"""
txn_batch -- Import job pipeline: job lifecycle, batch execution, scheduling.

Provides the ImportJob state machine, the BatchExecutor that streams a
stored file through the row codec and transformer into batched inserts,
the JobScheduler worker pool with per-job execution leases, lease
recovery, and the ImportCoordinator used by inbound adapters.

Architecture:
    txn_batch/ is a top-level package.  Nothing in txn_kernel, txn_config
    or txn_ingestion imports from txn_batch (except the lazy model
    registration in ``txn_kernel.db.engine.create_tables``).
    ``txn_batch.orchestrator.ImportOrchestrator`` composes everything.
"""
