"""
Shared request dependencies
"""

from datetime import date
from typing import Optional

from fastapi import HTTPException, Query, Request

from ..engine import LoanEngine
from ..models import Role


def get_engine(request: Request) -> LoanEngine:
    return request.app.state.engine


def get_as_of(request: Request,
              as_of: Optional[date] = Query(None, description="Civil date, defaults to today")) -> date:
    if as_of is not None:
        return as_of
    return get_engine(request).today()


def parse_role(value: str) -> Role:
    try:
        return Role(value.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role: {value}")
