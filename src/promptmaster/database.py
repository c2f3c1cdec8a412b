"""Database setup for users, categories, prompts, favorites and settings."""

import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings

logger = logging.getLogger(__name__)

FALLBACK_CATEGORY_ID = "other"
REGISTRATION_KEY = "allow_registration"

SYSTEM_CATEGORIES = [
    ("coding", "编程", "Code"),
    ("writing", "写作", "PenTool"),
    ("image-gen", "图像生成", "Image"),
    ("data-analysis", "数据分析", "BarChart"),
    ("learning", "学习", "Book"),
    (FALLBACK_CATEGORY_ID, "其他", "Tag"),
]


def new_id() -> str:
    return str(uuid.uuid4())


def _fold_case(value):
    return value.lower() if isinstance(value, str) else value


def make_engine(url: str):
    """Create an engine, sharing one connection for in-memory SQLite.

    On SQLite ``lower()`` is ``str.lower``; the built-in only folds ASCII.
    """
    kwargs: Dict[str, object] = {"future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
    new_engine = create_engine(url, **kwargs)
    if url.startswith("sqlite"):

        @event.listens_for(new_engine, "connect")
        def register_lower(dbapi_connection, connection_record):
            dbapi_connection.create_function("lower", 1, _fold_case, deterministic=True)

    return new_engine


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
Base = declarative_base()


class Category(Base):
    """A system or user-defined prompt category."""

    __tablename__ = "categories"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    type = Column(String, default="user", nullable=False)
    icon = Column(String, default="Tag")
    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


class Prompt(Base):
    """A stored prompt owned by a user."""

    __tablename__ = "prompts"

    id = Column(String, primary_key=True, default=new_id)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    description = Column(Text, default="", nullable=False)
    category_id = Column(String, ForeignKey("categories.id"), index=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, index=True, nullable=False)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    author_name = Column(String, nullable=False)
    visibility = Column(String, default="private", nullable=False)

    tag_rows = relationship(
        "PromptTag",
        order_by="PromptTag.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def tags(self) -> List[str]:
        return [row.name for row in self.tag_rows]

    def set_tags(self, tags: Iterable[str]) -> None:
        self.tag_rows = [
            PromptTag(name=name, position=index)
            for index, name in enumerate(normalize_tags(tags))
        ]


class PromptTag(Base):
    """One tag of a prompt; position keeps the author's ordering."""

    __tablename__ = "prompt_tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    prompt_id = Column(
        String, ForeignKey("prompts.id", ondelete="CASCADE"), index=True, nullable=False
    )
    name = Column(String, index=True, nullable=False)
    position = Column(Integer, default=0, nullable=False)


class Favorite(Base):
    """Existence of a row means the user favorited the prompt."""

    __tablename__ = "user_favorites"

    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    prompt_id = Column(
        String, ForeignKey("prompts.id", ondelete="CASCADE"), primary_key=True
    )


class AppSetting(Base):
    """Process-wide key/value settings."""

    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


def normalize_tags(tags: Iterable[str]) -> List[str]:
    """Trim and lowercase tags, dropping empties and repeats."""
    seen: List[str] = []
    for tag in tags or []:
        name = str(tag).strip().lower()
        if name and name not in seen:
            seen.append(name)
    return seen


def seed_db(session: Session) -> None:
    """Populate an empty store with system categories and initial accounts."""
    from .auth import hash_password
    from .models.user import User

    if session.query(User).count() > 0:
        return

    logger.info("seeding empty database demo=%s", settings.seed_demo_data)
    now = datetime.utcnow()
    session.add(
        User(
            id="user1",
            name="Admin User",
            avatar="AU",
            role="admin",
            password_hash=hash_password("password"),
            is_first_login=False,
            created_at=now,
        )
    )
    for category_id, name, icon in SYSTEM_CATEGORIES:
        if session.get(Category, category_id) is None:
            session.add(Category(id=category_id, name=name, type="system", icon=icon))
    if session.get(AppSetting, REGISTRATION_KEY) is None:
        session.add(
            AppSetting(
                key=REGISTRATION_KEY,
                value="true" if settings.allow_registration else "false",
            )
        )

    if settings.seed_demo_data:
        session.add(
            User(
                id="user2",
                name="Jane Doe",
                avatar="JD",
                role="user",
                password_hash=hash_password("password"),
                is_first_login=False,
                created_at=now,
            )
        )
        demos = [
            (
                "demo1",
                "React Component Generator",
                "Create a responsive React functional component with TypeScript and "
                "Tailwind CSS. Include proper type definitions, state management with "
                "hooks, and responsive design patterns.",
                "Standard template for generating UI components.",
                "coding",
                ["react", "typescript", "tailwind", "ui"],
                "user1",
                "Admin User",
                "public",
            ),
            (
                "demo2",
                "Blog Post Outline",
                "Act as a professional content strategist. Create a detailed blog post "
                "outline with sections, key points, and SEO recommendations for the "
                "given topic.",
                "Structuring blog content efficiently.",
                "writing",
                ["blog", "content", "marketing", "outline"],
                "user1",
                "Admin User",
                "private",
            ),
            (
                "demo3",
                "Midjourney Portrait (Shared)",
                "/imagine prompt: A cinematic portrait of a person in cyberpunk style, "
                "neon lighting, detailed face, 8k resolution, dramatic atmosphere "
                "--ar 2:3 --v 6",
                "Shared by Jane",
                "image-gen",
                ["midjourney", "portrait", "cyberpunk", "art"],
                "user2",
                "Jane Doe",
                "public",
            ),
        ]
        for pid, title, content, description, category_id, tags, owner, author, vis in demos:
            prompt = Prompt(
                id=pid,
                title=title,
                content=content,
                description=description,
                category_id=category_id,
                created_at=now,
                updated_at=now,
                user_id=owner,
                author_name=author,
                visibility=vis,
            )
            prompt.set_tags(tags)
            session.add(prompt)
        session.add(Favorite(user_id="user1", prompt_id="demo1"))

    session.commit()


def init_db(bind=None, session_factory=None) -> None:
    """Create database tables if they do not exist and seed an empty store."""
    from .models import user  # noqa: F401  registers the users table

    Base.metadata.create_all(bind=bind or engine)
    session = (session_factory or SessionLocal)()
    try:
        seed_db(session)
    finally:
        session.close()
