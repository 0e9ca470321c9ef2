from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g

from app.gradeai.models import User
from app.gradeai.utils import api_error


def current_user() -> User | None:
    user: User | None = getattr(g, "current_user", None)
    if not user or not user.is_active:
        return None
    return user


def login_required(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        # API clients get a JSON 401 instead of a login redirect.
        if current_user() is None:
            return api_error("Unauthorized", 401)
        return fn(*args, **kwargs)

    return wrapped
