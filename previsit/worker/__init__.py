# Pipeline stage internals.
# Entry-points live in ``previsit.worker.main``; orchestration in
# ``coordinator`` (file stage) and ``summary`` (summary stage).
