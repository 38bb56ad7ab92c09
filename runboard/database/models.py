from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, Float, Index, CheckConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

class Run(Base):
    __tablename__ = 'runs'

    id = Column(String(64), primary_key=True)

    # Ownership (real account id or a placeholder state, see utils.ownership)
    owner_ref = Column(String(128), nullable=False, default="", index=True)
    owner_display_name = Column(String(100), nullable=False, default="")
    owner_name_key = Column(String(100), nullable=False, default="", index=True)  # Normalized display name

    # Co-op partner (only for mode == co-op)
    co_owner_display_name = Column(String(100), nullable=True)
    co_owner_name_key = Column(String(100), nullable=True, index=True)
    co_owner_ref = Column(String(128), nullable=True, index=True)

    # Group key components
    board_kind = Column(String(32), nullable=False, default="regular")
    category_ref = Column(String(64), nullable=False, default="")
    platform_ref = Column(String(64), nullable=False, default="")
    level_ref = Column(String(64), nullable=False, default="")  # Empty for regular boards
    mode = Column(String(16), nullable=False, default="solo")

    # Result
    time = Column(String(20), nullable=False)
    submitted_date = Column(String(10), nullable=True)  # YYYY-MM-DD
    video_url = Column(Text, nullable=True)
    comment = Column(Text, nullable=True)

    # Moderation state
    verified = Column(Boolean, nullable=False, default=False)
    verified_by = Column(String(128), nullable=True)
    obsolete = Column(Boolean, nullable=False, default=False)

    # Derived values (written by the reconciliation engine only)
    rank = Column(Integer, nullable=True)
    points = Column(Float, nullable=False, default=0)

    # Import pipeline fallbacks (imported runs may only carry names, no registry ids)
    fallback_category_name = Column(String(100), nullable=True)
    fallback_platform_name = Column(String(100), nullable=True)
    fallback_level_name = Column(String(100), nullable=True)
    import_ref = Column(String(64), nullable=True, index=True)

    # Metadata
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('ix_runs_group', 'board_kind', 'category_ref', 'platform_ref', 'level_ref', 'mode', 'verified'),
        CheckConstraint('rank IS NULL OR (rank >= 1 AND rank <= 3)', name='ck_runs_podium_rank'),
    )

    def __repr__(self):
        return f"<Run(id='{self.id}', owner='{self.owner_ref}', time='{self.time}', verified={self.verified})>"

class Player(Base):
    __tablename__ = 'players'

    uid = Column(String(128), primary_key=True)
    display_name = Column(String(100), nullable=False, default="")
    display_name_key = Column(String(100), nullable=False, default="", index=True)

    # Cached aggregates (recomputed from scratch, never incremented)
    cached_total_points = Column(Float, nullable=False, default=0)
    cached_total_runs = Column(Integer, nullable=False, default=0)

    # Profile metadata
    join_date = Column(String(10), nullable=True)
    name_color = Column(String(16), nullable=True)
    bio = Column(Text, nullable=True)
    is_admin = Column(Boolean, default=False)

    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Player(uid='{self.uid}', display_name='{self.display_name}', points={self.cached_total_points})>"

class Category(Base):
    __tablename__ = 'categories'

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    board_kind = Column(String(32), nullable=False, default="regular")
    order = Column(Integer, default=0)

    def __repr__(self):
        return f"<Category(id='{self.id}', name='{self.name}', board='{self.board_kind}')>"

class Platform(Base):
    __tablename__ = 'platforms'

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    order = Column(Integer, default=0)

    def __repr__(self):
        return f"<Platform(id='{self.id}', name='{self.name}')>"

class Level(Base):
    __tablename__ = 'levels'

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    order = Column(Integer, default=0)

    def __repr__(self):
        return f"<Level(id='{self.id}', name='{self.name}')>"

class Configuration(Base):
    __tablename__ = 'configurations'

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)  # JSON-encoded
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Configuration(key='{self.key}')>"

class AuditLog(Base):
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True)
    user_ref = Column(String(128), nullable=False)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)  # JSON-encoded
    created_at = Column(DateTime, default=func.now())

    def __repr__(self):
        return f"<AuditLog(action='{self.action}', user='{self.user_ref}')>"
