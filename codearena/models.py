from typing import List, Optional
from datetime import datetime
from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship

from codearena.policy import Subject

class UserRoleLink(SQLModel, table=True):
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", primary_key=True)
    role_id: Optional[int] = Field(default=None, foreign_key="role.id", primary_key=True)

class Role(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    users: List["User"] = Relationship(back_populates="roles", link_model=UserRoleLink)

class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    firebase_uid: str = Field(unique=True, index=True)
    email: str = Field(unique=True, index=True)
    display_name: str
    password_hash: Optional[str] = None  # legacy credential path only
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    roles: List[Role] = Relationship(back_populates="users", link_model=UserRoleLink)

    def role_names(self) -> List[str]:
        return sorted(role.name for role in self.roles)

    def as_subject(self) -> Subject:
        return Subject(uid=self.firebase_uid, roles=frozenset(role.name for role in self.roles))

class Problem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = Field(unique=True, index=True)
    description: str
    difficulty: str  # "EASY" | "MEDIUM" | "HARD" or any other tag
    time_limit_ms: int = 2000
    memory_limit_mb: int = 256
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    is_public: bool = False
    owner_uid: Optional[str] = Field(default=None, foreign_key="user.firebase_uid", index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class TestCase(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("problem_id", "name", name="uq_testcase_problem_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    problem_id: int = Field(foreign_key="problem.id", index=True)
    name: str
    description: Optional[str] = None
    input_file_name: str = "input.txt"
    output_file_name: str = "output.txt"
    input_key: str = ""
    output_key: str = ""
    file_size: int = 0  # bytes, input + output
    is_hidden: bool = False
    is_sample: bool = False
    created_by_uid: Optional[str] = Field(default=None, foreign_key="user.firebase_uid")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
