"""
Json log format carrying the identity of the object under reconciliation
"""

# First Party
from alog import AlogJsonFormatter


class ReconcileJsonFormatter(AlogJsonFormatter):
    """Adds the reconciliationId and the kind, namespace and name of the
    reconciled object to every json record. A record may carry its own
    `resource` extra (e.g. a Job created by a backup) which then takes the
    place of the reconciled manifest.
    """

    _FIELDS_TO_PRINT = AlogJsonFormatter._FIELDS_TO_PRINT + [
        "threadName",
        "reconciliationId",
        "kind",
        "apiVersion",
        "namespace",
        "resourceName",
        "resourceVersion",
        "resourceUid",
    ]

    def __init__(self, manifest=None, reconciliation_id=None):
        super().__init__()
        self.manifest = manifest or {}
        self.reconciliation_id = reconciliation_id

    @staticmethod
    def _identity(resource: dict) -> dict:
        metadata = resource.get("metadata") or {}
        return {
            "kind": resource.get("kind"),
            "apiVersion": resource.get("apiVersion"),
            "namespace": metadata.get("namespace"),
            "resourceName": metadata.get("name"),
            "resourceVersion": metadata.get("resourceVersion"),
            "resourceUid": metadata.get("uid"),
        }

    def format(self, record):
        if self.reconciliation_id:
            record.reconciliationId = self.reconciliation_id
        resource = getattr(record, "resource", None) or self.manifest
        if resource:
            for key, value in self._identity(resource).items():
                setattr(record, key, value)
        return super().format(record)
