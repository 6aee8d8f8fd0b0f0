# Em whatscrm/services/metrics_service.py
"""
Métricas do dashboard e dados dos relatórios.
Todas as consultas são filtradas pela organização.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from whatscrm.core.database import (
    utcnow, Contact, Conversation, Instance, Message, User,
    ConversationStatus, InstanceStatus, MessageDirection, MessageStatus, Priority, ReportType, UserRole
)
from whatscrm.core.errors import ServiceError

PERIOD_DAYS = {"1d": 1, "7d": 7, "30d": 30, "90d": 90}
PERIOD_INTERVAL = {"1d": "hour", "7d": "day", "30d": "day", "90d": "week"}
PERFORMANCE_ROLES = (UserRole.OPERATOR.value, UserRole.ADMIN.value, UserRole.MANAGER.value)


def period_start(period: str, now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return now - timedelta(days=PERIOD_DAYS.get(period, 7))


def start_of_today(now: Optional[datetime] = None) -> datetime:
    """Meia-noite do fuso local do servidor, em UTC "naive" como as datas gravadas."""
    now = now or utcnow()
    local = now.replace(tzinfo=timezone.utc).astimezone()
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)


def date_key(value: datetime, interval: str) -> str:
    if interval == "hour":
        return value.strftime("%Y-%m-%d %H:00")
    if interval == "week":
        # Semanas começam no domingo
        week_start = value - timedelta(days=(value.weekday() + 1) % 7)
        return week_start.strftime("%Y-%m-%d")
    return value.strftime("%Y-%m-%d")


def empty_buckets(start: datetime, end: datetime, interval: str, fields: Tuple[str, ...]) -> Dict[str, Dict[str, Any]]:
    step = {"hour": timedelta(hours=1), "day": timedelta(days=1), "week": timedelta(days=7)}[interval]
    buckets = {}
    current = start
    while current <= end:
        key = date_key(current, interval)
        buckets[key] = {"date": key, **{f: 0 for f in fields}}
        current += step
    # O bucket do "agora" sempre existe
    last = date_key(end, interval)
    buckets.setdefault(last, {"date": last, **{f: 0 for f in fields}})
    return buckets


def average_response_time(messages: List[Message]) -> Tuple[float, int]:
    """
    Média (segundos) entre uma mensagem INBOUND e a OUTBOUND seguinte da mesma conversa.
    `messages` precisa estar ordenada por conversa e data.
    """
    total = 0.0
    count = 0
    for current, following in zip(messages, messages[1:]):
        if current.conversation_id != following.conversation_id:
            continue
        if current.direction == MessageDirection.INBOUND.value and \
                following.direction == MessageDirection.OUTBOUND.value:
            total += (following.created_at - current.created_at).total_seconds()
            count += 1
    return (round(total / count) if count else 0), count


def _count_by(db: Session, column, *filters) -> Dict[str, int]:
    rows = db.query(column, func.count()).filter(*filters).group_by(column).all()
    return {key: count for key, count in rows}


class MetricsService:
    def __init__(self, db: Session):
        self.db = db

    def _messages_in(self, organization_id: str, start: datetime, end: Optional[datetime] = None):
        query = self.db.query(Message).filter(
            Message.organization_id == organization_id,
            Message.created_at >= start
        )
        if end is not None:
            query = query.filter(Message.created_at <= end)
        return query

    def response_time(
            self, organization_id: str, start: datetime, conversation_ids=None, end: Optional[datetime] = None
    ) -> Tuple[float, int]:
        query = self._messages_in(organization_id, start, end)
        if conversation_ids is not None:
            query = query.filter(Message.conversation_id.in_(conversation_ids))
        messages = query.order_by(Message.conversation_id, Message.created_at).all()
        return average_response_time(messages)

    # --- Dashboard ---

    def operator_performance(
            self, organization_id: str, start: datetime, end: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        operators = self.db.query(User).filter(
            User.organization_id == organization_id,
            User.role.in_(PERFORMANCE_ROLES)
        ).order_by(User.name).all()

        result = []
        for operator in operators:
            assigned = self.db.query(Conversation.id, Conversation.status).filter(
                Conversation.organization_id == organization_id,
                Conversation.assigned_to_id == operator.id,
                Conversation.created_at >= start
            )
            if end is not None:
                assigned = assigned.filter(Conversation.created_at <= end)
            assigned = assigned.all()
            conversation_ids = [c.id for c in assigned]
            messages_sent = self._messages_in(organization_id, start, end).filter(
                Message.sent_by_id == operator.id,
                Message.direction == MessageDirection.OUTBOUND.value
            ).count()
            avg, responses = self.response_time(organization_id, start, conversation_ids, end) \
                if conversation_ids else (0, 0)
            result.append({
                "id": operator.id,
                "name": operator.name,
                "email": operator.email,
                "role": operator.role,
                "conversationsAssigned": len(assigned),
                "conversationsClosed": sum(1 for c in assigned if c.status == ConversationStatus.CLOSED.value),
                "messagesSent": messages_sent,
                "avgResponseTime": avg,
                "responseCount": responses,
            })
        return result

    def dashboard_metrics(self, organization_id: str, period: str) -> Dict[str, Any]:
        now = utcnow()
        start = period_start(period, now)
        today = start_of_today(now)
        db = self.db

        messages = db.query(Message).filter(Message.organization_id == organization_id)
        conversations = db.query(Conversation).filter(Conversation.organization_id == organization_id)
        instances = db.query(Instance).filter(Instance.organization_id == organization_id)

        in_period = (Message.organization_id == organization_id, Message.created_at >= start)
        by_direction = _count_by(db, Message.direction, *in_period)
        by_status = _count_by(db, Message.status, *in_period)

        top_contacts = db.query(Contact, func.count(Message.id)).join(
            Message, Message.contact_id == Contact.id
        ).filter(
            Contact.organization_id == organization_id,
            Message.created_at >= start
        ).group_by(Contact.id).order_by(func.count(Message.id).desc()).limit(5).all()

        return {
            "selectedPeriod": period,
            "totals": {
                "contacts": db.query(Contact).filter(Contact.organization_id == organization_id).count(),
                "conversations": conversations.count(),
                "messages": messages.count(),
                "instances": instances.count(),
                "connectedInstances": instances.filter(Instance.status == InstanceStatus.CONNECTED.value).count(),
            },
            "today": {
                "messages": messages.filter(Message.created_at >= today).count(),
                "conversations": conversations.filter(Conversation.created_at >= today).count(),
            },
            "period": {
                "messagesByDirection": {d.value: by_direction.get(d.value, 0) for d in MessageDirection},
                "messagesByStatus": {s.value: by_status.get(s.value, 0) for s in MessageStatus},
                "newConversations": conversations.filter(Conversation.created_at >= start).count(),
            },
            "topContacts": [
                {"id": c.id, "name": c.name, "phoneNumber": c.phone_number, "messageCount": count}
                for c, count in top_contacts
            ],
            "operatorPerformance": self.operator_performance(organization_id, start),
        }

    def messages_chart(self, organization_id: str, period: str) -> Dict[str, Any]:
        now = utcnow()
        start = period_start(period, now)
        interval = PERIOD_INTERVAL.get(period, "day")
        buckets = empty_buckets(start, now, interval, ("inbound", "outbound", "total"))

        rows = self.db.query(Message.created_at, Message.direction).filter(
            Message.organization_id == organization_id,
            Message.created_at >= start
        ).all()
        for created_at, direction in rows:
            bucket = buckets.get(date_key(created_at, interval))
            if bucket is None:
                continue
            bucket["inbound" if direction == MessageDirection.INBOUND.value else "outbound"] += 1
            bucket["total"] += 1
        return {"period": period, "interval": interval, "data": list(buckets.values())}

    def conversations_chart(self, organization_id: str, period: str) -> Dict[str, Any]:
        now = utcnow()
        start = period_start(period, now)
        interval = PERIOD_INTERVAL.get(period, "day")
        statuses = tuple(s.value for s in ConversationStatus)
        buckets = empty_buckets(start, now, interval, statuses + ("total",))

        rows = self.db.query(Conversation.created_at, Conversation.status).filter(
            Conversation.organization_id == organization_id,
            Conversation.created_at >= start
        ).all()
        for created_at, status in rows:
            bucket = buckets.get(date_key(created_at, interval))
            if bucket is None:
                continue
            bucket[status] = bucket.get(status, 0) + 1
            bucket["total"] += 1
        return {"period": period, "interval": interval, "data": list(buckets.values())}

    def instances_status(self, organization_id: str) -> Dict[str, Any]:
        instances = self.db.query(Instance).filter(
            Instance.organization_id == organization_id
        ).order_by(Instance.created_at.desc()).all()
        counts = {s.value: 0 for s in InstanceStatus}
        for instance in instances:
            counts[instance.status] = counts.get(instance.status, 0) + 1
        return {"counts": counts, "total": len(instances), "instances": instances}

    # --- Relatórios ---

    def generate_report(self, organization_id: str, report_type: str, filters: Dict[str, Any]) -> Dict[str, Any]:
        start, end = _report_range(filters or {})
        builders = {
            ReportType.MESSAGES.value: self._report_messages,
            ReportType.CONVERSATIONS.value: self._report_conversations,
            ReportType.CONTACTS.value: self._report_contacts,
            ReportType.PERFORMANCE.value: self._report_performance,
        }
        if report_type == ReportType.CUSTOM.value:
            data = {name.lower(): build(organization_id, start, end) for name, build in builders.items()}
        else:
            data = builders[report_type](organization_id, start, end)
        return {
            "type": report_type,
            "startDate": start.isoformat(),
            "endDate": end.isoformat(),
            "generatedAt": utcnow().isoformat(),
            **data,
        }

    def _report_messages(self, organization_id, start, end):
        filters = (Message.organization_id == organization_id, Message.created_at >= start, Message.created_at <= end)
        by_direction = _count_by(self.db, Message.direction, *filters)
        by_status = _count_by(self.db, Message.status, *filters)
        return {
            "totalMessages": sum(by_direction.values()),
            "byDirection": {d.value: by_direction.get(d.value, 0) for d in MessageDirection},
            "byStatus": {s.value: by_status.get(s.value, 0) for s in MessageStatus},
        }

    def _report_conversations(self, organization_id, start, end):
        filters = (Conversation.organization_id == organization_id,
                   Conversation.created_at >= start, Conversation.created_at <= end)
        by_status = _count_by(self.db, Conversation.status, *filters)
        by_priority = _count_by(self.db, Conversation.priority, *filters)
        return {
            "totalConversations": sum(by_status.values()),
            "byStatus": {s.value: by_status.get(s.value, 0) for s in ConversationStatus},
            "byPriority": {p.value: by_priority.get(p.value, 0) for p in Priority},
        }

    def _report_contacts(self, organization_id, start, end):
        base = self.db.query(Contact).filter(Contact.organization_id == organization_id)
        return {
            "totalContacts": base.count(),
            "activeContacts": base.filter(Contact.is_active.is_(True)).count(),
            "newContacts": base.filter(Contact.created_at >= start, Contact.created_at <= end).count(),
        }

    def _report_performance(self, organization_id, start, end):
        return {"operators": self.operator_performance(organization_id, start, end)}


def _parse_date(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ServiceError(400, f"Data inválida: {value}")
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


def _report_range(filters: Dict[str, Any]) -> Tuple[datetime, datetime]:
    end = _parse_date(filters.get("endDate"))
    if end is None:
        end = utcnow()
    elif len(str(filters["endDate"])) == 10:
        # Só a data: inclui o dia inteiro
        end += timedelta(days=1, microseconds=-1)
    start = _parse_date(filters.get("startDate")) or end - timedelta(days=30)
    return start, end
