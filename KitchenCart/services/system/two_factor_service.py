"""
Two-factor service: the human side of a verification prompt.

Codes arrive here from the HTTP route or the WebSocket channel. Submitting
only records the code on the request; whoever is driving the browser picks
it up, either a login polling the request or the follow-up job queued by
resume_operation().
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from KitchenCart.exceptions import TwoFactorRequestNotFoundError, ValidationError
from KitchenCart.models.task_models import CreateTaskRequest, TaskPriority, TaskStatus, TaskType
from KitchenCart.models.two_factor_models import (
    MAX_ATTEMPTS,
    TwoFactorRequestModel,
    TwoFactorRequestType,
    TwoFactorStatus,
)
from KitchenCart.repositories.task_repository import TaskRepository
from KitchenCart.repositories.two_factor_repository import TwoFactorRepository
from KitchenCart.services.base_service import BaseService
from KitchenCart.suppliers.two_factor import TwoFactorNotifier

logger = logging.getLogger(__name__)

# Job that continues an operation once its code has been submitted
FOLLOW_UP_TASKS = {
    TwoFactorRequestType.LOGIN: TaskType.SESSION_REFRESH,
    TwoFactorRequestType.CHECKOUT: TaskType.CHECKOUT,
    TwoFactorRequestType.PRICE_REFRESH: TaskType.PRICE_REFRESH,
}


class TwoFactorService(BaseService):

    def __init__(self, engine_override=None, notifier: Optional[TwoFactorNotifier] = None,
                 parked=None, task_service=None, clock: Callable[[], datetime] = datetime.utcnow):
        super().__init__(engine_override)
        self.repository = TwoFactorRepository()
        self.task_repository = TaskRepository()
        self.notifier = notifier
        self._parked = parked
        self._task_service = task_service
        self.clock = clock

    @property
    def parked(self):
        if self._parked is None:
            from KitchenCart.services.system.supplier_operation_service import parked_logins
            self._parked = parked_logins
        return self._parked

    @property
    def task_service(self):
        if self._task_service is None:
            from KitchenCart.services.system.task_service import task_service
            self._task_service = task_service
        return self._task_service

    def _get_request(self, session, identifier: str, user_id: Optional[str]) -> TwoFactorRequestModel:
        request = self.repository.get_by_id_or_token(session, identifier)
        if user_id is not None and request.user_id != user_id:
            # Another user's request is reported exactly like a missing one
            raise TwoFactorRequestNotFoundError(f"Two-factor request {identifier} not found", request_id=identifier)
        return request

    async def submit_two_factor_code(self, identifier: str, code: str,
                                     user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Record a code for the request named by id or session token.

        Returns {success, can_retry, attempts_remaining, error?}. A request
        that used up its attempts, expired, or was already answered never
        accepts another code.
        """
        code = (code or "").strip()
        if not code:
            raise ValidationError("Verification code is required", missing_fields=["code"])

        now = self.clock()
        with self.get_session() as session:
            request = self._get_request(session, identifier, user_id)

            if request.attempts >= MAX_ATTEMPTS:
                result = {"success": False, "can_retry": False, "attempts_remaining": 0,
                          "error": "Maximum attempts exceeded"}
            elif request.is_expired(now):
                if request.is_pending():
                    request.mark_expired()
                    self.repository.save(session, request)
                result = {"success": False, "can_retry": False, "attempts_remaining": request.attempts_remaining,
                          "error": "Request expired"}
            elif not request.is_pending():
                result = {"success": False, "can_retry": False, "attempts_remaining": request.attempts_remaining,
                          "error": f"Request already {TwoFactorStatus(request.status).value}"}
            else:
                request.record_attempt(code)
                request = self.repository.save(session, request)
                result = {"success": True, "can_retry": request.attempts < MAX_ATTEMPTS,
                          "attempts_remaining": request.attempts_remaining}

        if not result["success"]:
            logger.info(f"Code for two-factor request {request.id} rejected: {result['error']}")
            if self.notifier is not None:
                await self.notifier.code_result(
                    request.user_id, request.id, False, error=result["error"], can_retry=False,
                    attempts_remaining=result["attempts_remaining"],
                )
            return result

        logger.info(f"Code submitted for two-factor request {request.id} (attempt {request.attempts})")
        await self.resume_operation(request)
        return result

    async def cancel(self, identifier: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Cancel a pending request. A login polling it stops on its next tick."""
        with self.get_session() as session:
            request = self._get_request(session, identifier, user_id)
            if not request.is_pending():
                return {"success": False, "error": f"Request already {TwoFactorStatus(request.status).value}",
                        "request": request.to_dict()}
            request.mark_cancelled()
            request = self.repository.save(session, request)

        await self._release_waiters(request, "Two-factor verification was cancelled", TaskStatus.CANCELLED)
        logger.info(f"Two-factor request {request.id} cancelled")
        return {"success": True, "request": request.to_dict()}

    def get_active_request(self, credential_id: str) -> Optional[Dict[str, Any]]:
        with self.get_session() as session:
            request = self.repository.get_active_for_credential(session, credential_id, self.clock())
            return request.to_dict() if request else None

    def get_history(self, credential_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        with self.get_session() as session:
            return [request.to_dict() for request in self.repository.get_history(session, credential_id, limit)]

    async def expire_stale_requests(self) -> int:
        """Expire every pending request past its deadline and fail the jobs parked on them."""
        with self.get_session() as session:
            expired = self.repository.expire_stale(session, self.clock())

        for request in expired:
            await self._release_waiters(request, "No verification code was entered in time", TaskStatus.FAILED)
        return len(expired)

    async def _release_waiters(self, request: TwoFactorRequestModel, message: str, status: TaskStatus):
        with self.get_session() as session:
            for task in self.task_repository.get_waiting_on_request(session, request.id):
                self.task_repository.update_task_status(
                    session, task.id, status, current_step=message, error_message=message,
                    error_type="TwoFactorCancelledError" if status == TaskStatus.CANCELLED else "TwoFactorTimeoutError",
                )
        await self.parked.discard(request.id)

    async def resume_operation(self, request: TwoFactorRequestModel) -> List[str]:
        """
        Wake whatever is waiting on this request's code. Jobs parked as
        waiting_input are re-queued with the request id; a parked login with
        no job gets the follow-up job for its request type. Returns the ids
        of the jobs that will continue.
        """
        resumed = []
        with self.get_session() as session:
            for task in self.task_repository.get_waiting_on_request(session, request.id):
                input_data = task.get_input_data()
                input_data["resume_request_id"] = request.id
                task.set_input_data(input_data)
                task.status = TaskStatus.PENDING
                task.waiting_on_request_id = None
                task.current_step = "Resuming after verification code"
                self.task_repository.update_task(session, task)
                resumed.append(task.id)

        if resumed:
            logger.info(f"Re-queued {len(resumed)} task(s) waiting on two-factor request {request.id}")
            return resumed

        if not self.parked.has(request.id):
            # A login is polling this request directly
            return resumed

        request_type = TwoFactorRequestType(request.request_type)
        task_type = FOLLOW_UP_TASKS[request_type]
        response = await self.task_service.create_task(
            CreateTaskRequest(
                task_type=task_type,
                name=f"Resume {request_type.value} after verification",
                priority=TaskPriority.HIGH,
                input_data={"credential_id": request.supplier_credential_id, "resume_request_id": request.id},
                max_retries=0,
                related_entity_type="supplier_credential",
                related_entity_id=request.supplier_credential_id,
            ),
            user_id=request.user_id,
        )
        if response.success:
            resumed.append(response.data["id"])
        else:
            logger.error(f"Could not queue follow-up for two-factor request {request.id}: {response.message}")
        return resumed


def get_two_factor_service() -> TwoFactorService:
    from KitchenCart.services.system.websocket_service import WebSocketTwoFactorNotifier

    return TwoFactorService(notifier=WebSocketTwoFactorNotifier(enqueue=None))
