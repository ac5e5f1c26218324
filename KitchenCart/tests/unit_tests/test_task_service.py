"""
Unit tests for TaskService outcome handling: completion, retry with
backoff, parking on a two-factor request, and failure.
"""

from datetime import datetime, timedelta

import pytest

from KitchenCart.exceptions import CaptchaDetectedError, RateLimitedError
from KitchenCart.models.task_models import CreateTaskRequest, TaskModel, TaskStatus, TaskType
from KitchenCart.models.two_factor_models import TwoFactorRequestType, TwoFactorType
from KitchenCart.repositories.task_repository import TaskRepository
from KitchenCart.repositories.two_factor_repository import TwoFactorRepository
from KitchenCart.services.system.task_service import RETRY_MAX_SECONDS, TaskService, retry_delay
from KitchenCart.suppliers.base import AddItemsResult
from KitchenCart.suppliers.two_factor import TwoFactorPending, WaitingForInput


class FakeOperations:
    """Stands in for SupplierOperationService; raises `error` when set."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def add_to_cart(self, credential_id, items, delivery_date=None, clear_first=False, **options):
        self.calls.append(("add_to_cart", credential_id, options))
        if self.error is not None:
            raise self.error
        return AddItemsResult(added=len(items), added_skus=[item["sku"] for item in items])


@pytest.fixture
def operations():
    return FakeOperations()


@pytest.fixture
def service(engine, operations):
    return TaskService(engine_override=engine, operation_service=operations)


async def queue(service, task_type=TaskType.ADD_TO_CART, input_data=None, **fields):
    if input_data is None:
        input_data = {"credential_id": "cred-1", "items": [{"sku": "A100", "quantity": 2}]}
    response = await service.create_task(CreateTaskRequest(
        task_type=task_type, name=f"Test {task_type.value}", input_data=input_data, **fields
    ))
    assert response.success
    return response.data["id"]


class TestTaskOutcomes:

    @pytest.mark.asyncio
    async def test_success(self, service, operations):
        task_id = await queue(service)

        task = await service.execute_task(task_id)

        assert task.status == TaskStatus.COMPLETED
        assert task.progress_percentage == 100
        assert task.get_result_data()["added_skus"] == ["A100"]
        # Background jobs never block on a human
        assert operations.calls[0][2] == {"allow_two_factor_wait": False, "resume_request_id": None}

    @pytest.mark.asyncio
    async def test_resume_request_id_forwarded(self, service, operations):
        task_id = await queue(service, input_data={
            "credential_id": "cred-1", "items": [{"sku": "A100"}], "resume_request_id": "req-9",
        })

        await service.execute_task(task_id)

        assert operations.calls[0][2]["resume_request_id"] == "req-9"

    @pytest.mark.asyncio
    async def test_retryable_error_requeued_with_backoff(self, service, operations):
        operations.error = RateLimitedError("Too many requests", retry_after=600)
        task_id = await queue(service)
        before = datetime.utcnow()

        task = await service.execute_task(task_id)

        assert task.status == TaskStatus.RETRY
        assert task.retry_count == 1
        assert task.error_type == "RateLimitedError"
        assert task.scheduled_at >= before + timedelta(seconds=600)

    @pytest.mark.asyncio
    async def test_retry_not_ready_until_scheduled(self, service, operations, session_factory):
        operations.error = RateLimitedError("Too many requests", retry_after=600)
        task_id = await queue(service)
        await service.execute_task(task_id)

        with session_factory() as session:
            repository = TaskRepository()
            assert task_id not in [t.id for t in repository.get_tasks_ready_to_run(session)]
            later = datetime.utcnow() + timedelta(hours=1)
            assert task_id in [t.id for t in repository.get_tasks_ready_to_run(session, later)]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, service, operations):
        operations.error = RateLimitedError("Too many requests")
        task_id = await queue(service, max_retries=0)

        task = await service.execute_task(task_id)

        assert task.status == TaskStatus.FAILED
        assert task.error_type == "RateLimitedError"

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails(self, service, operations):
        operations.error = CaptchaDetectedError("CAPTCHA detected")
        task_id = await queue(service)

        task = await service.execute_task(task_id)

        assert task.status == TaskStatus.FAILED
        assert task.retry_count == 0
        assert task.error_message == "CAPTCHA detected"

    @pytest.mark.asyncio
    async def test_waiting_for_code_parks_task(self, service, operations):
        pending = TwoFactorPending(
            request_id="req-1", session_token="tok", request_type="login", two_fa_type="sms",
            expires_at=datetime(2026, 3, 2, 9, 35),
        )
        operations.error = WaitingForInput(pending)
        task_id = await queue(service)

        task = await service.execute_task(task_id)

        assert task.status == TaskStatus.WAITING_INPUT
        assert task.waiting_on_request_id == "req-1"
        assert task.get_result_data()["two_factor"]["session_token"] == "tok"

    @pytest.mark.asyncio
    async def test_missing_input_fails(self, service, operations):
        task_id = await queue(service, input_data={"credential_id": "cred-1"})

        task = await service.execute_task(task_id)

        assert task.status == TaskStatus.FAILED
        assert task.error_type == "ValueError"
        assert operations.calls == []

    @pytest.mark.asyncio
    async def test_unknown_task(self, service):
        assert await service.execute_task("missing") is None


class TestMaintenanceTasks:

    @pytest.mark.asyncio
    async def test_expire_task_sweeps_stale_requests(self, service, make_credential, session_factory):
        credential = make_credential()
        with session_factory() as session:
            TwoFactorRepository().create_request(
                session, credential.user_id, credential.id, TwoFactorRequestType.LOGIN, TwoFactorType.SMS,
                now=datetime.utcnow() - timedelta(minutes=30),
            )
        task_id = await queue(service, TaskType.EXPIRE_TWO_FACTOR_REQUESTS, input_data={})

        task = await service.execute_task(task_id)

        assert task.status == TaskStatus.COMPLETED
        assert task.get_result_data() == {"expired_count": 1}

    def test_every_task_type_has_a_handler(self, service):
        registered = {entry["type"] for entry in service.get_available_task_types()}

        assert registered == {task_type.value for task_type in TaskType}


class TestRetryDelay:

    def test_exponential_with_jitter(self):
        assert 60 <= retry_delay(0) <= 75
        assert 120 <= retry_delay(1) <= 135

    def test_capped(self):
        assert retry_delay(20) <= RETRY_MAX_SECONDS + 15

    def test_supplier_retry_after_wins_when_longer(self):
        error = RateLimitedError("slow down", retry_after=3600)

        assert retry_delay(0, error) == 3600
