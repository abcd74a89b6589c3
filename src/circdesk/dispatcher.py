"""Command dispatch: one inbound envelope in, one response envelope out.

The command set is closed. Every ``Command`` member must have a route or the
dispatcher refuses to start, so a new command cannot silently fall through.
Each routed handler runs in its own session; engines commit their own unit
of work and a store failure (database or report file) is rolled back here and
reported under the same command tag.
"""
from __future__ import annotations
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Type, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from circdesk import catalog, lending, recorder, reservations
from circdesk.models import Subscriber
from circdesk.reports import ReportCache, ReportKind
from circdesk.reservations import ReservationOutcome
from circdesk.schemas import (
    Request, Response,
    BorrowIn, ReturnIn, ExtendIn, ReserveIn, SubscriberIn, BookIn, BookRef, SubscriberRef,
    SearchIn, ActivityFilterIn, NotificationIdsIn, LookbackIn,
    SubscriberOut, BookOut, ActivityLogOut, NotificationOut, BorrowHistoryItem,
)

logger = logging.getLogger(__name__)

UNKNOWN_COMMAND = "Error: Unknown command received."
INVALID_MESSAGE = "Error: Invalid message format."
INVALID_MESSAGE_TAG = "Error"

class Command(str, enum.Enum):
    BORROW_BOOK = "BorrowBook"
    RETURN_BOOK = "ReturnBook"
    EXTEND_LOAN = "ExtendLoan"
    RESERVE_BOOK = "ReserveBook"
    CANCEL_RESERVATION = "CancelReservation"
    GET_ALL_MEMBERS = "GetAllMembers"
    CREATE_MEMBER = "CreateMember"
    GET_ALL_BOOKS = "GetAllBooks"
    GET_BOOK_BY_ID = "GetBookById"
    SEARCH_BOOKS = "SearchBooks"
    ADD_BOOK = "AddBook"
    GET_ACTIVITY_LOGS = "GetActivityLogs"
    GET_BORROW_HISTORY = "GetBorrowHistory"
    GET_NOTIFICATIONS = "GetNotifications"
    DELETE_NOTIFICATIONS = "DeleteNotifications"
    GET_LOAN_DURATION_CHART = "GetLoanDurationChart"
    GET_LATE_RETURN_CHART = "GetLateReturnChart"
    GET_MEMBER_STATUS = "GetMemberStatus"

# Commands whose response payload is a status token rather than a message.
TOKEN_COMMANDS = {Command.RESERVE_BOOK}

Handler = Callable[[AsyncSession, Any], Awaitable[Any]]

@dataclass(frozen=True)
class Route:
    model: Type[BaseModel]
    handler: Handler
    # bare scalar payloads accepted for single-field commands, e.g. ``30`` for {"days": 30}
    scalar_field: Optional[str] = None

    def parse(self, raw: Any) -> BaseModel:
        if raw is None:
            raw = {}
        elif self.scalar_field and not isinstance(raw, (dict, BaseModel)):
            raw = {self.scalar_field: raw}
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        return self.model.model_validate(raw)

class _NoPayload(BaseModel):
    pass

def _message(r: Dict[str, Any]) -> str:
    if not r["ok"]:
        logger.debug("[dispatcher] Rejected (%s): %s", r["code"], r["message"])
    return r["message"]

def _dump(dto: Type[BaseModel], obj: Any) -> Dict[str, Any]:
    return dto.model_validate(obj).model_dump(mode="json", by_alias=True)

class Dispatcher:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], report_cache: ReportCache):
        self._session_factory = session_factory
        self._reports = report_cache
        self._routes = self._build_routes()
        missing = [c.value for c in Command if c not in self._routes]
        if missing:
            raise RuntimeError(f"No handler registered for command(s): {', '.join(missing)}")

    def _build_routes(self) -> Dict[Command, Route]:
        return {
            Command.BORROW_BOOK: Route(BorrowIn, self._borrow_book),
            Command.RETURN_BOOK: Route(ReturnIn, self._return_book),
            Command.EXTEND_LOAN: Route(ExtendIn, self._extend_loan),
            Command.RESERVE_BOOK: Route(ReserveIn, self._reserve_book),
            Command.CANCEL_RESERVATION: Route(ReserveIn, self._cancel_reservation),
            Command.GET_ALL_MEMBERS: Route(_NoPayload, self._get_all_members),
            Command.CREATE_MEMBER: Route(SubscriberIn, self._create_member),
            Command.GET_ALL_BOOKS: Route(_NoPayload, self._get_all_books),
            Command.GET_BOOK_BY_ID: Route(BookRef, self._get_book_by_id, scalar_field="book_id"),
            Command.SEARCH_BOOKS: Route(SearchIn, self._search_books),
            Command.ADD_BOOK: Route(BookIn, self._add_book),
            Command.GET_ACTIVITY_LOGS: Route(ActivityFilterIn, self._get_activity_logs),
            Command.GET_BORROW_HISTORY: Route(SubscriberRef, self._get_borrow_history, scalar_field="subscriber_id"),
            Command.GET_NOTIFICATIONS: Route(SubscriberRef, self._get_notifications, scalar_field="subscriber_id"),
            Command.DELETE_NOTIFICATIONS: Route(NotificationIdsIn, self._delete_notifications),
            Command.GET_LOAN_DURATION_CHART: Route(LookbackIn, self._loan_duration_chart, scalar_field="days"),
            Command.GET_LATE_RETURN_CHART: Route(LookbackIn, self._late_return_chart, scalar_field="days"),
            Command.GET_MEMBER_STATUS: Route(LookbackIn, self._member_status, scalar_field="days"),
        }

    @property
    def commands(self):
        return frozenset(self._routes)

    async def dispatch(self, envelope: Union[Request, Dict[str, Any], Any]) -> Response:
        try:
            request = envelope if isinstance(envelope, Request) else Request.model_validate(envelope)
        except ValidationError:
            logger.warning("[dispatcher] Rejected malformed envelope")
            return Response(command=INVALID_MESSAGE_TAG, payload=INVALID_MESSAGE)

        try:
            command = Command(request.command)
        except ValueError:
            logger.warning("[dispatcher] Unknown command %r", request.command)
            return Response(command=request.command, payload=UNKNOWN_COMMAND)

        route = self._routes[command]
        try:
            payload = route.parse(request.payload)
        except ValidationError as e:
            logger.warning("[dispatcher] Invalid payload for %s: %s error(s)", command.value, e.error_count())
            return Response(command=command.value, payload=self._protocol_error(command))

        async with self._session_factory() as session:
            try:
                result = await route.handler(session, payload)
            except (SQLAlchemyError, OSError):
                await session.rollback()
                logger.exception("[dispatcher] Store failure while handling %s", command.value)
                return Response(command=command.value, payload=self._store_error(command))
        return Response(command=command.value, payload=result)

    @staticmethod
    def _protocol_error(command: Command) -> str:
        if command in TOKEN_COMMANDS:
            return ReservationOutcome.ERROR.value
        return f"Error: Invalid payload for {command.value}"

    @staticmethod
    def _store_error(command: Command) -> str:
        if command in TOKEN_COMMANDS:
            return ReservationOutcome.DATABASE_ERROR.value
        return "Database error: the operation was rolled back"

    # Lending

    async def _borrow_book(self, session: AsyncSession, p: BorrowIn) -> str:
        r = await lending.borrow(session, book_id=p.book_id, subscriber_id=p.subscriber_id, librarian_id=p.librarian_id)
        return _message(r)

    async def _return_book(self, session: AsyncSession, p: ReturnIn) -> str:
        r = await lending.return_book(
            session, book_id=p.book_id, subscriber_id=p.subscriber_id,
            librarian_id=p.librarian_id, is_lost=p.is_lost,
        )
        return _message(r)

    async def _extend_loan(self, session: AsyncSession, p: ExtendIn) -> str:
        r = await lending.extend_loan(session, subscriber_id=p.subscriber_id, book_id=p.book_id, librarian_id=p.librarian_id)
        return _message(r)

    # Reservations

    async def _reserve_book(self, session: AsyncSession, p: ReserveIn) -> str:
        r = await reservations.request_reservation(session, subscriber_id=p.subscriber_id, book_id=p.book_id)
        return r["data"]["outcome"].value

    async def _cancel_reservation(self, session: AsyncSession, p: ReserveIn) -> str:
        r = await reservations.cancel_reservation(session, subscriber_id=p.subscriber_id, book_id=p.book_id)
        return _message(r)

    # Members and catalog

    async def _get_all_members(self, session: AsyncSession, _: _NoPayload):
        return [_dump(SubscriberOut, s) for s in await catalog.list_members(session)]

    async def _create_member(self, session: AsyncSession, p: SubscriberIn):
        r = await catalog.register_subscriber(session, full_name=p.full_name, email=p.email, phone=p.phone)
        if not r["ok"]:
            return _message(r)
        return _dump(SubscriberOut, await session.get(Subscriber, r["data"]["subscriber_id"]))

    async def _get_all_books(self, session: AsyncSession, _: _NoPayload):
        return [_dump(BookOut, b) for b in await catalog.list_books(session)]

    async def _get_book_by_id(self, session: AsyncSession, p: BookRef):
        book = await catalog.get_book(session, p.book_id)
        if book is None:
            return "Book doesn't exist"
        return _dump(BookOut, book)

    async def _search_books(self, session: AsyncSession, p: SearchIn):
        return [_dump(BookOut, b) for b in await catalog.search_books(session, field=p.field, term=p.term)]

    async def _add_book(self, session: AsyncSession, p: BookIn):
        r = await catalog.register_book(
            session, title=p.title, author=p.author, subject=p.subject, description=p.description,
            shelf_location=p.shelf_location, total_copies=p.total_copies,
        )
        if not r["ok"]:
            return _message(r)
        return _dump(BookOut, await catalog.get_book(session, r["data"]["book_id"]))

    async def _get_borrow_history(self, session: AsyncSession, p: SubscriberRef):
        return [_dump(BorrowHistoryItem, h) for h in await catalog.borrow_history(session, p.subscriber_id)]

    # Activity and notifications

    async def _get_activity_logs(self, session: AsyncSession, p: ActivityFilterIn):
        logs = await recorder.list_activity_logs(session, subscriber_id=p.subscriber_id, librarian_id=p.librarian_id)
        return [_dump(ActivityLogOut, a) for a in logs]

    async def _get_notifications(self, session: AsyncSession, p: SubscriberRef):
        return [_dump(NotificationOut, n) for n in await recorder.list_notifications(session, p.subscriber_id)]

    async def _delete_notifications(self, session: AsyncSession, p: NotificationIdsIn) -> bool:
        return await recorder.delete_notifications(session, p.notification_ids)

    # Reports

    async def _loan_duration_chart(self, session: AsyncSession, p: LookbackIn):
        return (await self._reports.get_or_generate(session, ReportKind.LOAN_DURATION, p.days)).payload

    async def _late_return_chart(self, session: AsyncSession, p: LookbackIn):
        return (await self._reports.get_or_generate(session, ReportKind.LATE_RETURN, p.days)).payload

    async def _member_status(self, session: AsyncSession, p: LookbackIn):
        return (await self._reports.get_or_generate(session, ReportKind.MEMBER_STATUS, p.days)).payload
