"""
Session Refresh Task - Keeps stored supplier sessions alive
"""

from datetime import datetime
from typing import Dict, Any, List
from .base_task import BaseTask
from KitchenCart.exceptions import SessionExpiredError, SupplierError
from KitchenCart.models.task_models import TaskModel
from KitchenCart.repositories.supplier_credential_repository import SupplierCredentialRepository


class SessionRefreshTask(BaseTask):
    """
    Re-authenticate credentials whose session is older than the refresh
    window. Runs unattended: a two-factor supplier whose session has died is
    marked expired instead of prompting anyone. Given a resume_request_id it
    finishes the login parked on that two-factor request.
    """

    @property
    def task_type(self) -> str:
        return "session_refresh"

    @property
    def name(self) -> str:
        return "Session Refresh"

    @property
    def description(self) -> str:
        return "Refresh stored supplier sessions before they expire"

    def _stale_credentials(self) -> List[str]:
        repository = SupplierCredentialRepository()
        with self.operations.session_factory() as session:
            return [credential.id for credential in repository.list_needing_refresh(session, datetime.utcnow())]

    async def execute(self, task: TaskModel) -> Dict[str, Any]:
        input_data = self.get_input_data(task)
        resume_request_id = input_data.get("resume_request_id")

        if resume_request_id:
            outcome = await self.operations.authenticate(
                input_data["credential_id"], allow_two_factor_wait=True, resume_request_id=resume_request_id
            )
            return {"refreshed": [outcome.credential_id], "failed": [], "expired": []}

        if input_data.get("credential_id"):
            credential_ids = [input_data["credential_id"]]
        else:
            credential_ids = self._stale_credentials()

        refreshed, expired, failed = [], [], []
        for index, credential_id in enumerate(credential_ids):
            await self.update_progress(
                task, int(100 * index / max(len(credential_ids), 1)),
                f"Refreshing session {index + 1}/{len(credential_ids)}"
            )
            try:
                await self.operations.authenticate(
                    credential_id, allow_two_factor_wait=False, allow_interactive_login=False
                )
                refreshed.append(credential_id)
            except SessionExpiredError:
                expired.append(credential_id)
            except SupplierError as e:
                self.log_error(f"Refresh failed for credential {credential_id}: {e.message}", task)
                failed.append({"credential_id": credential_id, "error": e.message, "error_type": type(e).__name__})

        self.log_info(f"Refreshed {len(refreshed)}, expired {len(expired)}, failed {len(failed)}", task)
        return {"refreshed": refreshed, "expired": expired, "failed": failed}
