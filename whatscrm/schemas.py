# Em whatscrm/schemas.py

from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, EmailStr
from pydantic.alias_generators import to_camel

from whatscrm.core.database import (
    UserRole, UserStatus, ConversationStatus, Priority, MessageType, ReportType,
    KanbanActionType, KanbanTrigger
)


class CamelModel(BaseModel):
    """Base de todos os schemas: JSON em camelCase, mas aceita snake_case na entrada."""

    class Config:
        from_attributes = True
        populate_by_name = True
        alias_generator = to_camel


def dump(schema, obj) -> Dict[str, Any]:
    """Converte um objeto do SQLAlchemy no JSON (camelCase) do schema informado."""
    return schema.model_validate(obj).model_dump(mode="json", by_alias=True)


def dump_list(schema, objs) -> List[Dict[str, Any]]:
    return [dump(schema, o) for o in objs]


# --- Modelos resumidos (para relacionamentos) ---

class OrganizationBrief(CamelModel):
    id: str
    name: str
    is_active: bool


class UserBrief(CamelModel):
    id: str
    name: str
    email: str


class DepartmentBrief(CamelModel):
    id: str
    name: str
    color: Optional[str] = None


class ContactBrief(CamelModel):
    id: str
    name: Optional[str] = None
    phone_number: str
    email: Optional[str] = None
    avatar: Optional[str] = None


class InstanceBrief(CamelModel):
    id: str
    name: str
    instance_name: str
    status: str


class ConversationBrief(CamelModel):
    id: str
    title: Optional[str] = None
    status: str


class CampaignBrief(CamelModel):
    id: str
    name: str
    status: str


# --- Modelos de Usuário / Organização ---

class UserOut(CamelModel):
    id: str
    name: str
    email: str
    role: str
    status: str
    avatar: Optional[str] = None
    phone: Optional[str] = None
    last_login: Optional[datetime] = None
    organization_id: str
    departments: List[DepartmentBrief] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrganizationOut(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    domain: Optional[str] = None
    is_active: bool
    settings: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DepartmentOut(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    is_active: bool
    organization_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# --- Instâncias / Contatos / Conversas / Mensagens ---

class InstanceOut(CamelModel):
    id: str
    name: str
    instance_name: str
    description: Optional[str] = None
    status: str
    qr_code: Optional[str] = None
    webhook_events: Optional[List[str]] = None
    settings: Optional[Dict[str, Any]] = None
    organization_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ContactOut(CamelModel):
    id: str
    phone_number: str
    name: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    avatar: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    is_active: bool
    last_interaction: Optional[datetime] = None
    organization_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MessageOut(CamelModel):
    id: str
    content: Optional[str] = None
    type: str
    direction: str
    status: str
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    external_id: Optional[str] = None
    message_metadata: Optional[Dict[str, Any]] = Field(None, serialization_alias="metadata")
    conversation_id: str
    contact_id: str
    instance_id: Optional[str] = None
    sent_by_id: Optional[str] = None
    sent_by: Optional[UserBrief] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConversationOut(CamelModel):
    id: str
    title: Optional[str] = None
    status: str
    priority: str
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    last_message_at: Optional[datetime] = None
    organization_id: str
    contact_id: str
    instance_id: Optional[str] = None
    assigned_to_id: Optional[str] = None
    created_by_id: Optional[str] = None
    contact: Optional[ContactBrief] = None
    instance: Optional[InstanceBrief] = None
    assigned_to: Optional[UserBrief] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# --- Campanhas / Relatórios ---

class CampaignOut(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    message_template: str
    target_contacts: Optional[List[str]] = None
    status: str
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    sent_count: int = 0
    delivered_count: int = 0
    read_count: int = 0
    organization_id: str
    instance_id: Optional[str] = None
    created_by_id: Optional[str] = None
    instance: Optional[InstanceBrief] = None
    created_by: Optional[UserBrief] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ReportOut(CamelModel):
    id: str
    name: str
    type: str
    filters: Optional[Dict[str, Any]] = None
    data: Optional[Dict[str, Any]] = None
    organization_id: str
    created_by: Optional[UserBrief] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# --- Kanban ---

class KanbanColumnOut(CamelModel):
    id: str
    name: str
    color: Optional[str] = None
    order: int
    kanban_id: str


class KanbanActivityOut(CamelModel):
    id: str
    action: str
    details: Optional[Dict[str, Any]] = None
    card_id: str
    user: Optional[UserBrief] = None
    created_at: Optional[datetime] = None


class KanbanCardOut(CamelModel):
    id: str
    title: str
    description: Optional[str] = None
    order: int
    column_id: str
    kanban_id: str
    contact_id: Optional[str] = None
    conversation_id: Optional[str] = None
    campaign_id: Optional[str] = None
    contact: Optional[ContactBrief] = None
    conversation: Optional[ConversationBrief] = None
    campaign: Optional[CampaignBrief] = None
    created_by: Optional[UserBrief] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class KanbanColumnDetail(KanbanColumnOut):
    cards: List[KanbanCardOut] = []


class KanbanOut(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    is_active: bool
    organization_id: str
    created_by: Optional[UserBrief] = None
    columns: List[KanbanColumnOut] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class KanbanDetail(KanbanOut):
    columns: List[KanbanColumnDetail] = []


class KanbanActionOut(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    type: str
    trigger: str
    conditions: Optional[Dict[str, Any]] = None
    config: Optional[Dict[str, Any]] = None
    is_active: bool
    column_id: str
    kanban_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class KanbanExecutionOut(CamelModel):
    id: str
    status: str
    result: Optional[Any] = None
    error: Optional[str] = None
    executed_at: Optional[datetime] = None
    action_id: str
    card_id: str


# ===================================================================
# Requisições
# ===================================================================

# --- Auth ---
class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=6)


class RegisterRequest(CamelModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=6)
    organization_name: str = Field(..., min_length=2)
    organization_description: Optional[str] = None


class RefreshRequest(CamelModel):
    token: Optional[str] = None


# --- Usuários ---
class UserCreateRequest(CamelModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: UserRole = UserRole.OPERATOR
    status: UserStatus = UserStatus.ACTIVE
    phone: Optional[str] = None
    department_ids: List[str] = []


class UserUpdateRequest(CamelModel):
    name: Optional[str] = Field(None, min_length=2)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(None, min_length=6)
    role: Optional[UserRole] = None
    status: Optional[UserStatus] = None
    phone: Optional[str] = None
    department_ids: Optional[List[str]] = None


class UserStatusRequest(CamelModel):
    status: str


class ProfileUpdateRequest(CamelModel):
    name: Optional[str] = Field(None, min_length=2)
    phone: Optional[str] = None
    avatar: Optional[str] = None


class PasswordChangeRequest(CamelModel):
    current_password: str
    new_password: str


# --- Organização / Departamentos / Settings ---
class OrganizationUpdateRequest(CamelModel):
    name: Optional[str] = Field(None, min_length=2)
    description: Optional[str] = None
    domain: Optional[str] = None


class DepartmentRequest(CamelModel):
    name: str = Field(..., min_length=2)
    description: Optional[str] = None
    color: Optional[str] = None
    is_active: Optional[bool] = None


class DepartmentUsersRequest(CamelModel):
    user_ids: List[str]


class EvolutionSettingsRequest(CamelModel):
    base_url: str = Field(..., min_length=1)
    api_key: str = Field(..., min_length=1)


# --- Instâncias ---
class InstanceCreateRequest(CamelModel):
    name: str = Field(..., min_length=1)
    instance_name: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    description: Optional[str] = None
    webhook_events: Optional[List[str]] = None


class InstanceUpdateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    webhook_events: Optional[List[str]] = None
    settings: Optional[Dict[str, Any]] = None


class InstanceSettingsRequest(CamelModel):
    reject_call: Optional[Any] = None
    msg_call: Optional[str] = None
    groups_ignore: Optional[Any] = None
    always_online: Optional[Any] = None
    read_messages: Optional[Any] = None
    sync_full_history: Optional[Any] = None
    read_status: Optional[Any] = None


# --- Contatos ---
class ContactCreateRequest(CamelModel):
    phone_number: str = Field(..., min_length=8)
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    company: Optional[str] = None
    tags: List[str] = []
    notes: Optional[str] = None
    is_active: bool = True


class ContactUpdateRequest(CamelModel):
    phone_number: Optional[str] = Field(None, min_length=8)
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    company: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None


class ContactImportRequest(CamelModel):
    # Cada item é validado individualmente: um contato ruim não derruba a importação
    contacts: List[Dict[str, Any]]


# --- Conversas ---
class ConversationCreateRequest(CamelModel):
    contact_id: str
    instance_id: Optional[str] = None
    title: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    tags: List[str] = []
    notes: Optional[str] = None


class ConversationUpdateRequest(CamelModel):
    title: Optional[str] = None
    status: Optional[ConversationStatus] = None
    priority: Optional[Priority] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None


class AssignRequest(CamelModel):
    user_id: Optional[str] = None


# --- Mensagens ---
class SendMessageRequest(CamelModel):
    instance_id: str
    phone_number: str = Field(..., min_length=8)
    content: str = Field(..., min_length=1, max_length=4096)
    type: MessageType = MessageType.TEXT
    conversation_id: Optional[str] = None
    media_url: Optional[str] = None


class BulkMessageRequest(CamelModel):
    instance_id: str
    phone_numbers: List[str] = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


class ScheduleMessageRequest(CamelModel):
    instance_id: str
    phone_number: str = Field(..., min_length=8)
    content: str = Field(..., min_length=1)
    scheduled_at: datetime


# --- Campanhas / Relatórios ---
class CampaignCreateRequest(CamelModel):
    name: str = Field(..., min_length=2)
    description: Optional[str] = None
    message_template: str = Field(..., min_length=1)
    target_contacts: List[str] = []
    instance_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None


class CampaignUpdateRequest(CamelModel):
    name: Optional[str] = Field(None, min_length=2)
    description: Optional[str] = None
    message_template: Optional[str] = None
    target_contacts: Optional[List[str]] = None
    instance_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None


class ReportCreateRequest(CamelModel):
    name: str = Field(..., min_length=2)
    type: ReportType
    filters: Dict[str, Any] = {}


class ReportUpdateRequest(CamelModel):
    name: Optional[str] = Field(None, min_length=2)
    type: Optional[ReportType] = None
    filters: Optional[Dict[str, Any]] = None


# --- Kanban ---
class KanbanColumnRequest(CamelModel):
    name: str = Field(..., min_length=1)
    color: Optional[str] = None


class KanbanCreateRequest(CamelModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    color: Optional[str] = None
    columns: List[KanbanColumnRequest] = []


class KanbanUpdateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    columns: Optional[List[KanbanColumnRequest]] = None


class CardCreateRequest(CamelModel):
    column_id: str
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    contact_id: Optional[str] = None
    conversation_id: Optional[str] = None
    campaign_id: Optional[str] = None


class CardMoveRequest(CamelModel):
    column_id: str
    order: int = Field(0, ge=0)


class CardUpdateRequest(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    contact_id: Optional[str] = None
    conversation_id: Optional[str] = None
    campaign_id: Optional[str] = None


class KanbanActionCreateRequest(CamelModel):
    column_id: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    type: KanbanActionType
    trigger: KanbanTrigger
    conditions: Dict[str, Any] = {}
    config: Dict[str, Any] = {}
    is_active: bool = True


class KanbanActionUpdateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[KanbanActionType] = None
    trigger: Optional[KanbanTrigger] = None
    conditions: Optional[Dict[str, Any]] = None
    config: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class ExecuteActionsRequest(CamelModel):
    trigger: KanbanTrigger
