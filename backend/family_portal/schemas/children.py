from pydantic import BaseModel, Field
from typing import Optional
from datetime import date, datetime


class ChildInput(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    birth_date: Optional[date] = None
    city: Optional[str] = Field(default=None, max_length=100)
    country: Optional[str] = Field(default=None, max_length=100)


class RegisterChildrenRequest(BaseModel):
    children: list[ChildInput] = Field(min_length=1)


class ChildInfo(BaseModel):
    id: int
    first_name: str
    last_name: str
    birth_date: Optional[date] = None
    city: Optional[str] = None
    country: Optional[str] = None
    code: Optional[str] = None
    code_status: Optional[str] = None
    created_at: Optional[datetime] = None


class RegisteredChild(BaseModel):
    id: int
    first_name: str
    code: str
