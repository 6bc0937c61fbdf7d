from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from datetime import datetime
from .database import Base


class Organization(Base):
    """
    Organização (tenant). Carrega a política de acesso do portal.
    """
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(100), nullable=False, unique=True)
    require_factor_for_token = Column(Boolean, nullable=False, default=True)  # link/QR do portal
    require_factor_for_login = Column(Boolean, nullable=False, default=False)  # código do evento + documento
    portal_max_attempts = Column(Integer, nullable=False, default=5)
    portal_lock_minutes = Column(Integer, nullable=False, default=10)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Event(Base):
    """
    Evento/tour de uma organização.
    """
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    access_code = Column(String(16), nullable=False, unique=True)
    start_date = Column(String(10), nullable=True)  # yyyy-mm-dd
    end_date = Column(String(10), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Participant(Base):
    """
    Participante de um evento.

    Os contadores de falha do portal só são alterados pelo LockoutManager.
    """
    __tablename__ = "participants"
    __table_args__ = (
        Index("ix_participants_event_identity", "event_id", "identity_number"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    full_name = Column(String(200), nullable=False)
    email = Column(String(200), nullable=True)
    phone = Column(String(50), nullable=True)
    identity_number = Column(String(20), nullable=True)  # apenas dígitos
    check_in_code = Column(String(16), nullable=False, unique=True)
    portal_failed_attempts = Column(Integer, nullable=False, default=0)
    portal_locked_until = Column(DateTime, nullable=True)
    portal_last_failed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ParticipantAccessToken(Base):
    """
    Token de acesso emitido para um participante.

    Apenas o hash do segredo é persistido; o segredo em claro
    só existe na resposta da emissão.
    """
    __tablename__ = "participant_access_tokens"
    __table_args__ = (
        UniqueConstraint("participant_id", "version", name="uq_access_tokens_participant_version"),
    )

    id = Column(String(64), primary_key=True)  # hex aleatório
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    participant_id = Column(Integer, ForeignKey("participants.id", ondelete="CASCADE"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    secret_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    revoked_at = Column(DateTime, nullable=True)


class PortalSession(Base):
    """
    Sessão do portal. Buscada sempre pelo hash do handle, nunca pelo handle.
    """
    __tablename__ = "portal_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    participant_id = Column(Integer, ForeignKey("participants.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)


class CheckIn(Base):
    """
    Chegada de um participante em um evento.

    A existência da linha é a única verdade sobre "chegou";
    a restrição única impede duplicatas mesmo com requisições concorrentes.
    """
    __tablename__ = "check_ins"
    __table_args__ = (
        UniqueConstraint("event_id", "participant_id", name="uq_check_ins_event_participant"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    participant_id = Column(Integer, ForeignKey("participants.id", ondelete="CASCADE"), nullable=False)
    checked_in_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    method = Column(String(16), nullable=False, default="manual")  # "manual" | "qr"
