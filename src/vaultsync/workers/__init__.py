"""Background analysis workers.

Learn: AnalysisWorker knows what one job means (reload, revalidate,
analyze, persist, emit). WorkerPool knows how to run many of them against
the queue. The worker process entry point is vaultsync.worker.
"""
