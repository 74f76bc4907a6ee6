"""
Domain queries: every read goes through the Resource Cache Store under the
key family of its resource.
"""
import logging
from typing import Any, List, Optional

from api_client import CourtClient
from cache import ResourceCache
from keys import (
    CalendarKeys,
    CaseKeys,
    ChatKeys,
    DocumentKeys,
    MotionKeys,
    NotificationKeys,
    OrderKeys,
    PartnerKeys,
    ReportKeys,
    UserKeys,
    make_key,
)

logger = logging.getLogger(__name__)

# Staff lists change rarely
STAFF_STALE_TIME_SECONDS = 15 * 60


class NotFoundError(LookupError):
    """A detail read found no matching row in the list it was derived from."""


def _find(rows: Optional[List[dict]], row_id: Any) -> dict:
    for row in rows or []:
        if row.get("id") == row_id or str(row.get("id")) == str(row_id):
            return row
    raise NotFoundError(f"No row with id {row_id!r}")


class CourtQueries:
    """
    Cached reads of backend resources.

    Usage:
        queries = CourtQueries(cache, client)
        cases = await queries.cases({"status": "Filed"})
        motion = await queries.motion(7)
    """

    def __init__(self, cache: ResourceCache, client: CourtClient, mirror=None):
        self.cache = cache
        self.client = client
        self.mirror = mirror

    # ========== Cases ==========

    async def cases(self, filters: dict = None, force: bool = False) -> List[dict]:
        filters = {k: v for k, v in (filters or {}).items() if v is not None}
        fetcher = lambda: self.client.get_cases(**filters)
        if not filters and self.mirror is not None:
            fetcher = self.mirror.wrap(fetcher)
        return await self.cache.fetch(
            CaseKeys.list(filters),
            fetcher,
            force=force,
        )

    async def case(self, case_id: str) -> dict:
        return await self.cache.fetch(CaseKeys.detail(case_id), lambda: self.client.get_case(case_id))

    async def prefetch_case(self, case_id: str) -> None:
        await self.cache.prefetch(CaseKeys.detail(case_id), lambda: self.client.get_case(case_id))

    # ========== Motions ==========

    async def motions(self, status: str = None, force: bool = False) -> List[dict]:
        filters = {"status": status}
        return await self.cache.fetch(
            MotionKeys.list(filters),
            lambda: self.client.get_motions(status=status),
            force=force,
        )

    async def motions_for_case(self, case_id: str) -> List[dict]:
        return await self.cache.fetch(
            MotionKeys.by_case(case_id), lambda: self.client.get_motions(case_id=case_id)
        )

    async def pending_motions(self) -> List[dict]:
        return await self.cache.fetch(
            MotionKeys.pending, lambda: self.client.get_motions(status="Pending")
        )

    async def motion(self, motion_id: Any) -> dict:
        """Motions have no detail endpoint; the row is picked out of the full list."""
        async def load():
            return _find(await self.client.get_motions(), motion_id)
        return await self.cache.fetch(MotionKeys.detail(motion_id), load)

    # ========== Orders ==========

    async def orders(self, status: str = None, force: bool = False) -> List[dict]:
        filters = {"status": status}
        return await self.cache.fetch(
            OrderKeys.list(filters),
            lambda: self.client.get_orders(status=status),
            force=force,
        )

    async def orders_for_case(self, case_id: str) -> List[dict]:
        return await self.cache.fetch(
            OrderKeys.by_case(case_id), lambda: self.client.get_orders(case_id=case_id)
        )

    async def draft_orders(self) -> List[dict]:
        return await self.cache.fetch(OrderKeys.draft, lambda: self.client.get_orders(status="Draft"))

    async def order(self, order_id: Any) -> dict:
        async def load():
            return _find(await self.client.get_orders(), order_id)
        return await self.cache.fetch(OrderKeys.detail(order_id), load)

    # ========== Documents ==========

    async def documents_for_case(self, case_id: str) -> List[dict]:
        return await self.cache.fetch(
            DocumentKeys.by_case(case_id), lambda: self.client.get_documents(case_id=case_id)
        )

    # ========== Notifications ==========

    async def notifications(self) -> List[dict]:
        return await self.cache.fetch(NotificationKeys.list(), self.client.get_notifications)

    async def unread_notifications(self) -> List[dict]:
        return await self.cache.fetch(
            NotificationKeys.unread, lambda: self.client.get_notifications(unread_only=True)
        )

    # ========== Chat ==========

    async def conversations(self) -> List[dict]:
        return await self.cache.fetch(ChatKeys.conversations, self.client.get_conversations)

    async def messages(self, user_id: str) -> List[dict]:
        return await self.cache.fetch(ChatKeys.messages(user_id), lambda: self.client.get_messages(user_id))

    async def unread_chat_count(self) -> int:
        return await self.cache.fetch(ChatKeys.unread_count, self.client.get_unread_chat_count)

    # ========== Staff directory ==========

    async def staff(self, role: str = None) -> List[dict]:
        return await self.cache.fetch(
            UserKeys.list({"role": role}),
            lambda: self.client.get_users(role=role),
            stale_time=STAFF_STALE_TIME_SECONDS,
        )

    async def lawyers(self) -> List[dict]:
        return await self.cache.fetch(
            UserKeys.lawyers, self.client.get_lawyers, stale_time=STAFF_STALE_TIME_SECONDS
        )

    async def judges(self) -> List[dict]:
        return await self.cache.fetch(
            UserKeys.judges, self.client.get_judges, stale_time=STAFF_STALE_TIME_SECONDS
        )

    # ========== Calendar / partners / reports ==========

    async def hearings(self, start_date: str = None, end_date: str = None) -> List[dict]:
        if start_date is None and end_date is None:
            return await self.cache.fetch(CalendarKeys.hearings, self.client.get_hearings)
        return await self.cache.fetch(
            make_key("calendar", "hearings", {"startDate": start_date, "endDate": end_date}),
            lambda: self.client.get_hearings(start_date=start_date, end_date=end_date),
        )

    async def hearings_on(self, date: str) -> List[dict]:
        return await self.cache.fetch(
            CalendarKeys.by_date(date), lambda: self.client.get_hearings_by_date(date)
        )

    async def partner_exchanges(self) -> List[dict]:
        return await self.cache.fetch(PartnerKeys.all, self.client.get_partner_exchanges)

    async def dashboard_stats(self) -> dict:
        return await self.cache.fetch(ReportKeys.dashboard, self.client.get_dashboard_stats)
