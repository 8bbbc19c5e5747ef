from datetime import datetime
from sqlalchemy import (
    Column, Integer, Text, Float, ForeignKey, Index, UniqueConstraint,
    Date, DateTime,
)
from sqlalchemy.orm import relationship
from db.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    display_name = Column(Text, nullable=False)
    birth_year = Column(Integer)
    sex = Column(Text)  # male | female
    created_at = Column(DateTime, default=datetime.utcnow)

    conversations = relationship("Conversation", back_populates="owner", cascade="all, delete-orphan")
    fitness_profile = relationship("FitnessProfile", back_populates="user", uselist=False, cascade="all, delete-orphan")
    body_composition_records = relationship("BodyCompositionRecord", back_populates="user", cascade="all, delete-orphan")
    planned_events = relationship("PlannedEvent", back_populates="user", cascade="all, delete-orphan")


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    title = Column(Text)
    state_json = Column(Text)  # versioned ConversationState, see services.conversation_state
    context_summary = Column(Text)
    summary_cursor_seq = Column(Integer)  # last Message.seq folded into context_summary
    summary_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime)

    owner = relationship("User", back_populates="conversations")
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.seq",
    )


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "seq", name="uq_messages_conversation_seq"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    seq = Column(Integer, nullable=False)
    role = Column(Text, nullable=False)  # user | assistant | tool_call | tool_result
    kind = Column(Text, nullable=False, default="text")  # text | greeting | call | result | plan_preview | input_request
    call_id = Column(Text)  # correlates a tool_call with its tool_result
    content = Column(Text, nullable=False, default="")
    payload_json = Column(Text)
    status = Column(Text)  # pending | confirmed | edited | cancelled | applied
    created_at = Column(DateTime, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    conversation = relationship("Conversation", back_populates="messages")


class FitnessProfile(Base):
    __tablename__ = "fitness_profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    fitness_goal = Column(Text)  # muscle_gain | fat_loss | endurance | general_fitness
    experience_level = Column(Text)  # beginner | intermediate | advanced
    days_per_week = Column(Integer)
    session_minutes = Column(Integer)
    equipment = Column(Text)  # JSON array
    injuries = Column(Text)  # JSON array
    activity_level = Column(Text)  # sedentary | light | moderate | active | very_active
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="fitness_profile")


class BodyCompositionRecord(Base):
    __tablename__ = "body_composition_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    measured_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    height_cm = Column(Float)
    weight_kg = Column(Float, nullable=False)
    skeletal_muscle_kg = Column(Float)
    body_fat_pct = Column(Float)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="body_composition_records")


class PlannedEvent(Base):
    __tablename__ = "planned_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    plan_message_id = Column(Integer, ForeignKey("messages.id"))
    event_type = Column(Text, nullable=False)  # workout | meal
    scheduled_date = Column(Date, nullable=False)
    title = Column(Text, nullable=False)
    details_json = Column(Text)
    status = Column(Text, nullable=False, default="scheduled")
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="planned_events")


Index("idx_messages_conversation_call", Message.conversation_id, Message.call_id)
Index("idx_conversations_owner_updated", Conversation.owner_id, Conversation.updated_at)
Index("idx_body_composition_user_date", BodyCompositionRecord.user_id, BodyCompositionRecord.measured_at)
Index("idx_planned_events_user_date", PlannedEvent.user_id, PlannedEvent.scheduled_date)
