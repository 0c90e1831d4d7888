import hmac
import json
import logging
import math
from urllib.parse import parse_qsl, urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from payment_service.auth import CurrentUser, RequestContext, request_context, verify_token
from payment_service.config import Settings
from payment_service.dependencies import get_payment_service, get_settings, get_verifier
from payment_service.models import PaymentMethod, TransactionStatus
from payment_service.schemas import (
    ApprovalUrlResponse, CallbackResponse, ConfirmResponse, CourseOut, DeleteManyRequest,
    DeleteResponse, EnrollmentOut, FreeEnrollmentResponse, HistoryEntryOut, SessionRequest,
    SessionResponse, TransactionDetail, TransactionOut, TransactionPage,
)
from payment_service.service import PaymentService
from payment_service.verifier import CallbackVerifier

logger = logging.getLogger(__name__)

router = APIRouter()

RECONCILIATION_HEADER = "x-reconciliation-key"


async def _callback_payload(request: Request) -> dict:
    payload = dict(request.query_params)
    if request.method != "POST":
        return payload
    body = await request.body()
    if not body:
        return payload
    if request.headers.get("content-type", "").startswith("application/x-www-form-urlencoded"):
        payload.update(parse_qsl(body.decode(), keep_blank_values=True))
        return payload
    try:
        data = json.loads(body)
    except ValueError:
        logger.warning("Ignoring unreadable callback body")
        return payload
    if isinstance(data, dict):
        payload.update(data)
    return payload


def _is_operator(request: Request, settings: Settings) -> bool:
    key = settings.MANUAL_RECONCILIATION_KEY
    supplied = request.headers.get(RECONCILIATION_HEADER)
    return bool(key and supplied and hmac.compare_digest(supplied, key))


@router.api_route("/transactions/callback/{method}", methods=["GET", "POST"])
async def payment_callback(
    method: PaymentMethod,
    request: Request,
    verifier: CallbackVerifier = Depends(get_verifier),
    settings: Settings = Depends(get_settings),
):
    payload = await _callback_payload(request)
    user_id = None
    if method == PaymentMethod.MANUAL_PROOF:
        if _is_operator(request, settings):
            payload["verifiedVia"] = "operator"
        else:
            # A user confirming their own transfer must be signed in and own the transaction.
            user_id = verify_token(request.headers.get("authorization")).id
            payload["verifiedVia"] = "user"

    result = await run_in_threadpool(
        verifier.handle, method, payload, request_context(request), user_id
    )
    response = CallbackResponse.model_validate(result)

    if (method == PaymentMethod.REDIRECT_SIGNED and request.method == "GET"
            and settings.CLIENT_URL):
        params = {
            "status": "success" if result.status == TransactionStatus.COMPLETED.value else "error",
            "transactionId": result.transaction_id or "",
            "courseId": result.course_id or "",
        }
        if result.reason:
            params["message"] = result.reason
        return RedirectResponse(
            f"{settings.CLIENT_URL.rstrip('/')}/payment-result?{urlencode(params)}",
            status_code=302,
        )
    return response


@router.get("/transactions/redirect_signed/banks")
def list_banks(
    user: CurrentUser = Depends(verify_token),
    service: PaymentService = Depends(get_payment_service),
):
    return {"banks": service.bank_list()}


@router.get("/transactions/history", response_model=TransactionPage)
def transaction_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    user: CurrentUser = Depends(verify_token),
    service: PaymentService = Depends(get_payment_service),
):
    items, total = service.history(user.id, page, page_size)
    return TransactionPage(
        items=[TransactionOut.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size),
    )


@router.post("/transactions/delete-many", response_model=DeleteResponse)
def delete_many(
    body: DeleteManyRequest,
    user: CurrentUser = Depends(verify_token),
    service: PaymentService = Depends(get_payment_service),
):
    return DeleteResponse(deleted_count=service.delete_many(user.id, body.transaction_ids))


@router.post("/transactions/{transaction_id}/cancel", response_model=TransactionOut)
def cancel_transaction(
    transaction_id: int,
    user: CurrentUser = Depends(verify_token),
    context: RequestContext = Depends(request_context),
    service: PaymentService = Depends(get_payment_service),
):
    return service.cancel(user.id, transaction_id, context)


@router.post("/transactions/{transaction_id}/confirm", response_model=ConfirmResponse)
def confirm_transaction(
    transaction_id: int,
    user: CurrentUser = Depends(verify_token),
    service: PaymentService = Depends(get_payment_service),
):
    transaction, enrollment = service.confirm(user.id, transaction_id)
    return ConfirmResponse(
        transaction=TransactionOut.model_validate(transaction),
        enrolled=enrollment is not None,
        enrollment=EnrollmentOut.model_validate(enrollment) if enrollment else None,
    )


@router.get("/transactions/{transaction_id}/approval-url", response_model=ApprovalUrlResponse)
def approval_url(
    transaction_id: int,
    user: CurrentUser = Depends(verify_token),
    context: RequestContext = Depends(request_context),
    service: PaymentService = Depends(get_payment_service),
):
    transaction, result = service.approval_url(user.id, transaction_id, context)
    return ApprovalUrlResponse(transaction_id=transaction.id, approve_url=result.session_url)


@router.post("/transactions/{method}/{course_id}", response_model=SessionResponse)
def create_transaction(
    method: PaymentMethod,
    course_id: int,
    body: SessionRequest | None = None,
    user: CurrentUser = Depends(verify_token),
    context: RequestContext = Depends(request_context),
    service: PaymentService = Depends(get_payment_service),
):
    transaction, result = service.create_session(
        user.id, method, course_id,
        bank_code=body.bank_code if body else None,
        context=context,
    )
    return SessionResponse(
        transaction_id=transaction.id,
        transaction_code=transaction.code,
        status=transaction.status,
        session_url=result.session_url,
        display_payload=result.display_payload,
    )


@router.get("/transactions/{transaction_id}", response_model=TransactionDetail)
def transaction_detail(
    transaction_id: int,
    user: CurrentUser = Depends(verify_token),
    service: PaymentService = Depends(get_payment_service),
):
    transaction, course, enrollment, history = service.detail(user.id, transaction_id)
    return TransactionDetail(
        transaction=TransactionOut.model_validate(transaction),
        course=CourseOut.model_validate(course) if course else None,
        enrollment=EnrollmentOut.model_validate(enrollment) if enrollment else None,
        history=[HistoryEntryOut.model_validate(entry) for entry in history],
    )


@router.delete("/transactions/{transaction_id}", response_model=DeleteResponse)
def delete_transaction(
    transaction_id: int,
    user: CurrentUser = Depends(verify_token),
    service: PaymentService = Depends(get_payment_service),
):
    service.delete(user.id, transaction_id)
    return DeleteResponse(deleted_count=1)


@router.get("/courses/{course_id}/transactions", response_model=list[TransactionOut])
def course_transactions(
    course_id: int,
    user: CurrentUser = Depends(verify_token),
    service: PaymentService = Depends(get_payment_service),
):
    return service.course_history(user.id, course_id)


@router.post("/courses/{course_id}/enroll-free", response_model=FreeEnrollmentResponse)
def enroll_free(
    course_id: int,
    user: CurrentUser = Depends(verify_token),
    context: RequestContext = Depends(request_context),
    service: PaymentService = Depends(get_payment_service),
):
    enrollment, transaction = service.enroll_free(user.id, course_id, context)
    return FreeEnrollmentResponse(
        enrollment=EnrollmentOut.model_validate(enrollment),
        transaction=TransactionOut.model_validate(transaction),
    )
