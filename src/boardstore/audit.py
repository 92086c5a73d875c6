"""Append-only deletion log, provisioned on first use."""

from __future__ import annotations

import logging

from boardstore.backend import StructuralEdit
from boardstore.batch_io import BatchIO
from boardstore.errors import PermanentBackendError
from boardstore.models import AuditEntry

logger = logging.getLogger(__name__)

AUDIT_HEADERS = ("timestamp", "executorEmail", "targetId", "targetEmail", "reason", "deleteType")


class AuditLog:
    def __init__(self, io: BatchIO, sheet: str = "deletion_log") -> None:
        self._io = io
        self.sheet = sheet
        self._provisioned = False

    def ensure(self) -> None:
        """Create the log sheet with its header if it does not exist yet."""
        if self._provisioned:
            return
        if self.sheet not in self._io.list_sheets():
            try:
                self._io.structural_edit(
                    [StructuralEdit(kind="add_sheet", sheet=self.sheet, header=list(AUDIT_HEADERS))]
                )
                logger.info("Created audit sheet %s", self.sheet)
            except PermanentBackendError:
                # Another writer may have created it between list and add.
                if self.sheet not in self._io.list_sheets():
                    raise
        self._provisioned = True

    def record(self, entry: AuditEntry) -> None:
        self.ensure()
        self._io.append(self.sheet, [entry.to_row()])
