import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    create_engine, Column, String, Boolean, ForeignKey, DateTime, Integer, Text, JSON, UniqueConstraint
)
from sqlalchemy.orm import sessionmaker, declarative_base, relationship
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func

from whatscrm.core.config import DATABASE_URL

# Configuração do Banco
if DATABASE_URL.startswith("sqlite"):
    _engine_kwargs = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in DATABASE_URL or DATABASE_URL == "sqlite://":
        _engine_kwargs["poolclass"] = StaticPool
else:
    _engine_kwargs = {"pool_pre_ping": True, "pool_size": 20, "max_overflow": 30}

engine = create_engine(DATABASE_URL, **_engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # Datas gravadas sempre em UTC "naive" (SQLite não guarda fuso)
    return datetime.now(timezone.utc).replace(tzinfo=None)


# --- ENUMS ---

class UserRole(str, enum.Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    OPERATOR = "OPERATOR"
    VIEWER = "VIEWER"


class UserStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    PENDING = "PENDING"


class InstanceStatus(str, enum.Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    QRCODE = "QRCODE"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"


class ConversationStatus(str, enum.Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    CLOSED = "CLOSED"
    WAITING = "WAITING"


class Priority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class MessageType(str, enum.Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"
    DOCUMENT = "DOCUMENT"
    LOCATION = "LOCATION"
    CONTACT = "CONTACT"


class MessageDirection(str, enum.Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class MessageStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"


class CampaignStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ReportType(str, enum.Enum):
    PERFORMANCE = "PERFORMANCE"
    MESSAGES = "MESSAGES"
    CONVERSATIONS = "CONVERSATIONS"
    CONTACTS = "CONTACTS"
    CUSTOM = "CUSTOM"


class KanbanActionType(str, enum.Enum):
    SEND_MESSAGE = "SEND_MESSAGE"
    NOTIFY_USER = "NOTIFY_USER"
    CREATE_TASK = "CREATE_TASK"
    UPDATE_STATUS = "UPDATE_STATUS"
    SEND_EMAIL = "SEND_EMAIL"
    WEBHOOK_CALL = "WEBHOOK_CALL"


class KanbanTrigger(str, enum.Enum):
    ON_CARD_CREATE = "ON_CARD_CREATE"
    ON_ENTER_COLUMN = "ON_ENTER_COLUMN"
    ON_LEAVE_COLUMN = "ON_LEAVE_COLUMN"
    ON_TIME_DELAY = "ON_TIME_DELAY"


class ExecutionStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# --- MODELOS ---

class TimestampMixin:
    created_at = Column(DateTime, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, server_default=func.now())


class Organization(TimestampMixin, Base):
    __tablename__ = "organizations"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    description = Column(Text)
    domain = Column(String, unique=True)
    is_active = Column(Boolean, default=True, nullable=False)
    settings = Column(JSON, default=dict)

    users = relationship("User", back_populates="organization", cascade="all, delete-orphan")
    instances = relationship("Instance", back_populates="organization", cascade="all, delete-orphan")


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    password = Column(String, nullable=False)
    role = Column(String, default=UserRole.OPERATOR.value, nullable=False)
    status = Column(String, default=UserStatus.ACTIVE.value, nullable=False)
    avatar = Column(String)
    phone = Column(String)
    last_login = Column(DateTime)

    # Vinculo com a empresa
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    organization = relationship("Organization", back_populates="users")

    user_departments = relationship("UserDepartment", back_populates="user", cascade="all, delete-orphan")
    assigned_conversations = relationship(
        "Conversation", back_populates="assigned_to", foreign_keys="Conversation.assigned_to_id"
    )

    @property
    def departments(self):
        return [link.department for link in self.user_departments]


class Department(TimestampMixin, Base):
    __tablename__ = "departments"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    description = Column(Text)
    color = Column(String, default="#3B82F6")
    is_active = Column(Boolean, default=True, nullable=False)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)

    user_departments = relationship("UserDepartment", back_populates="department", cascade="all, delete-orphan")

    @property
    def users(self):
        return [link.user for link in self.user_departments]


class UserDepartment(Base):
    __tablename__ = "user_departments"
    __table_args__ = (UniqueConstraint("user_id", "department_id"),)

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    department_id = Column(String, ForeignKey("departments.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow, server_default=func.now())

    user = relationship("User", back_populates="user_departments")
    department = relationship("Department", back_populates="user_departments")


class Instance(TimestampMixin, Base):
    __tablename__ = "instances"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    instance_name = Column(String, unique=True, index=True, nullable=False)  # Ex: 'empresa-x-vendas'
    description = Column(Text)
    status = Column(String, default=InstanceStatus.DISCONNECTED.value, nullable=False)
    qr_code = Column(Text)
    webhook_events = Column(JSON, default=lambda: ["messages.upsert", "connection.update"])
    settings = Column(JSON, default=dict)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)

    organization = relationship("Organization", back_populates="instances")
    conversations = relationship("Conversation", back_populates="instance")
    messages = relationship("Message", back_populates="instance")


class Contact(TimestampMixin, Base):
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("organization_id", "phone_number"),)

    id = Column(String, primary_key=True, default=new_id)
    phone_number = Column(String, nullable=False, index=True)
    name = Column(String)
    email = Column(String)
    company = Column(String)
    avatar = Column(String)
    tags = Column(JSON, default=list)
    notes = Column(Text)
    is_active = Column(Boolean, default=True, nullable=False)
    last_interaction = Column(DateTime)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)

    conversations = relationship("Conversation", back_populates="contact", cascade="all, delete-orphan")
    messages = relationship("Message", back_populates="contact", cascade="all, delete-orphan")


class Conversation(TimestampMixin, Base):
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, default=new_id)
    title = Column(String)
    status = Column(String, default=ConversationStatus.OPEN.value, nullable=False)
    priority = Column(String, default=Priority.MEDIUM.value, nullable=False)
    tags = Column(JSON, default=list)
    notes = Column(Text)
    last_message_at = Column(DateTime)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    contact_id = Column(String, ForeignKey("contacts.id"), nullable=False, index=True)
    instance_id = Column(String, ForeignKey("instances.id"))
    assigned_to_id = Column(String, ForeignKey("users.id"))
    created_by_id = Column(String, ForeignKey("users.id"))

    contact = relationship("Contact", back_populates="conversations")
    instance = relationship("Instance", back_populates="conversations")
    assigned_to = relationship("User", back_populates="assigned_conversations", foreign_keys=[assigned_to_id])
    created_by = relationship("User", foreign_keys=[created_by_id])
    messages = relationship(
        "Message", back_populates="conversation", cascade="all, delete-orphan", order_by="Message.created_at"
    )


class Message(TimestampMixin, Base):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("organization_id", "external_id"),)

    id = Column(String, primary_key=True, default=new_id)
    content = Column(Text)
    type = Column(String, default=MessageType.TEXT.value, nullable=False)
    direction = Column(String, nullable=False)
    status = Column(String, default=MessageStatus.PENDING.value, nullable=False)
    media_url = Column(String)
    media_type = Column(String)
    # id da mensagem na Evolution (key.id); garante upsert idempotente
    external_id = Column(String, index=True)
    message_metadata = Column("metadata", JSON, default=dict)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    contact_id = Column(String, ForeignKey("contacts.id"), nullable=False, index=True)
    instance_id = Column(String, ForeignKey("instances.id"))
    sent_by_id = Column(String, ForeignKey("users.id"))

    conversation = relationship("Conversation", back_populates="messages")
    contact = relationship("Contact", back_populates="messages")
    instance = relationship("Instance", back_populates="messages")
    sent_by = relationship("User")


class Campaign(TimestampMixin, Base):
    __tablename__ = "campaigns"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    description = Column(Text)
    message_template = Column(Text, nullable=False)
    target_contacts = Column(JSON, default=list)
    status = Column(String, default=CampaignStatus.DRAFT.value, nullable=False)
    scheduled_at = Column(DateTime)
    sent_at = Column(DateTime)
    sent_count = Column(Integer, default=0, nullable=False)
    delivered_count = Column(Integer, default=0, nullable=False)
    read_count = Column(Integer, default=0, nullable=False)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    instance_id = Column(String, ForeignKey("instances.id"))
    created_by_id = Column(String, ForeignKey("users.id"))

    instance = relationship("Instance")
    created_by = relationship("User")


class Report(TimestampMixin, Base):
    __tablename__ = "reports"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)
    filters = Column(JSON, default=dict)
    data = Column(JSON)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    created_by_id = Column(String, ForeignKey("users.id"))

    created_by = relationship("User")


# --- KANBAN ---

class Kanban(TimestampMixin, Base):
    __tablename__ = "kanbans"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    description = Column(Text)
    color = Column(String)
    is_active = Column(Boolean, default=True, nullable=False)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    created_by_id = Column(String, ForeignKey("users.id"))

    created_by = relationship("User")
    columns = relationship(
        "KanbanColumn", back_populates="kanban", cascade="all, delete-orphan", order_by="KanbanColumn.order"
    )
    cards = relationship("KanbanCard", back_populates="kanban")


class KanbanColumn(TimestampMixin, Base):
    __tablename__ = "kanban_columns"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    color = Column(String, default="#6B7280")
    order = Column(Integer, default=0, nullable=False)
    kanban_id = Column(String, ForeignKey("kanbans.id"), nullable=False, index=True)

    kanban = relationship("Kanban", back_populates="columns")
    cards = relationship(
        "KanbanCard", back_populates="column", cascade="all, delete-orphan", order_by="KanbanCard.order"
    )
    actions = relationship("KanbanAction", back_populates="column", cascade="all, delete-orphan")


class KanbanCard(TimestampMixin, Base):
    __tablename__ = "kanban_cards"

    id = Column(String, primary_key=True, default=new_id)
    title = Column(String, nullable=False)
    description = Column(Text)
    order = Column(Integer, default=0, nullable=False)
    column_id = Column(String, ForeignKey("kanban_columns.id"), nullable=False, index=True)
    kanban_id = Column(String, ForeignKey("kanbans.id"), nullable=False, index=True)
    contact_id = Column(String, ForeignKey("contacts.id"))
    conversation_id = Column(String, ForeignKey("conversations.id"))
    campaign_id = Column(String, ForeignKey("campaigns.id"))
    created_by_id = Column(String, ForeignKey("users.id"))

    column = relationship("KanbanColumn", back_populates="cards")
    kanban = relationship("Kanban", back_populates="cards")
    contact = relationship("Contact")
    conversation = relationship("Conversation")
    campaign = relationship("Campaign")
    created_by = relationship("User")
    activities = relationship(
        "KanbanCardActivity", back_populates="card", cascade="all, delete-orphan",
        order_by="KanbanCardActivity.created_at.desc()"
    )
    executions = relationship("KanbanActionExecution", back_populates="card", cascade="all, delete-orphan")


class KanbanCardActivity(Base):
    __tablename__ = "kanban_card_activities"

    id = Column(String, primary_key=True, default=new_id)
    action = Column(String, nullable=False)  # created | moved | updated
    details = Column(JSON, default=dict)
    card_id = Column(String, ForeignKey("kanban_cards.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"))
    created_at = Column(DateTime, default=utcnow, server_default=func.now())

    card = relationship("KanbanCard", back_populates="activities")
    user = relationship("User")


class KanbanAction(TimestampMixin, Base):
    __tablename__ = "kanban_actions"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    description = Column(Text)
    type = Column(String, nullable=False)
    trigger = Column(String, nullable=False)
    conditions = Column(JSON, default=dict)
    config = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)
    column_id = Column(String, ForeignKey("kanban_columns.id"), nullable=False, index=True)
    kanban_id = Column(String, ForeignKey("kanbans.id"), nullable=False, index=True)

    column = relationship("KanbanColumn", back_populates="actions")
    kanban = relationship("Kanban")
    executions = relationship("KanbanActionExecution", back_populates="action", cascade="all, delete-orphan")


class KanbanActionExecution(Base):
    __tablename__ = "kanban_action_executions"

    id = Column(String, primary_key=True, default=new_id)
    status = Column(String, default=ExecutionStatus.RUNNING.value, nullable=False)
    result = Column(JSON)
    error = Column(Text)
    executed_at = Column(DateTime, default=utcnow)
    action_id = Column(String, ForeignKey("kanban_actions.id"), nullable=False, index=True)
    card_id = Column(String, ForeignKey("kanban_cards.id"), nullable=False, index=True)

    action = relationship("KanbanAction", back_populates="executions")
    card = relationship("KanbanCard", back_populates="executions")


# --- FUNÇÕES AUXILIARES ---

def init_db():
    """Cria as tabelas (se não existirem)"""
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
