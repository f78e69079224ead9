"""Lookup failures for registry, instance and worker queries."""


class PlanNotFoundError(LookupError):
    """No plan is stored under the fingerprint."""

    def __init__(self, fingerprint: str):
        super().__init__(f"Plan not found: {fingerprint}")
        self.fingerprint = fingerprint


class InstanceNotFoundError(LookupError):
    """No strategy instance exists with the id."""

    def __init__(self, instance_id: str):
        super().__init__(f"Strategy instance not found: {instance_id}")
        self.instance_id = instance_id


class WorkerNotFoundError(LookupError):
    """Worker is not registered."""

    def __init__(self, worker_id: str):
        super().__init__(f"Worker not registered: {worker_id}")
        self.worker_id = worker_id
