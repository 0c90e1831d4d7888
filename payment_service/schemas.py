from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class SessionRequest(CamelModel):
    bank_code: Optional[str] = None


class DeleteManyRequest(CamelModel):
    transaction_ids: list[int] = Field(min_length=1)


class TransactionOut(CamelModel):
    id: int
    code: str
    user_id: int
    course_id: int
    amount: float
    currency: str
    method: str
    status: str
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    payment_date: Optional[datetime] = None


class HistoryEntryOut(CamelModel):
    status: str
    message: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: Optional[datetime] = None


class CourseOut(CamelModel):
    id: int
    title: str
    price: float
    discount_price: Optional[float] = None
    currency: str


class EnrollmentOut(CamelModel):
    id: int
    user_id: int
    course_id: int
    status: str
    progress: int
    enrolled_at: Optional[datetime] = None


class SessionResponse(CamelModel):
    transaction_id: int
    transaction_code: str
    status: str
    session_url: Optional[str] = None
    display_payload: Optional[dict] = None


class ApprovalUrlResponse(CamelModel):
    transaction_id: int
    approve_url: str


class TransactionDetail(CamelModel):
    transaction: TransactionOut
    course: Optional[CourseOut] = None
    enrollment: Optional[EnrollmentOut] = None
    history: list[HistoryEntryOut] = []


class TransactionPage(CamelModel):
    items: list[TransactionOut]
    total: int
    page: int
    page_size: int
    total_pages: int


class ConfirmResponse(CamelModel):
    transaction: TransactionOut
    enrolled: bool
    enrollment: Optional[EnrollmentOut] = None


class FreeEnrollmentResponse(CamelModel):
    enrollment: EnrollmentOut
    transaction: TransactionOut


class CallbackResponse(CamelModel):
    status: str
    transaction_id: Optional[int] = None
    transaction_code: Optional[str] = None
    course_id: Optional[int] = None
    already_handled: bool = False
    reason: Optional[str] = None
    enrollment_id: Optional[int] = None


class DeleteResponse(CamelModel):
    deleted_count: int
