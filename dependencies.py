from collections.abc import Generator
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

import crud
from db import SessionLocal
from errors import PermissionDenied
from models import Actor

ADMIN_ROLE = "admin"


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Actor:
    # 認証はリバースプロキシ/IdP 側の責務。ここではヘッダを信頼する
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header required")

    return Actor(
        user_id=x_user_id,
        is_admin=(x_user_role or "").strip().lower() == ADMIN_ROLE,
        location_ids=crud.authorized_location_ids(db, x_user_id),
        person_id=crud.person_id_for_user(db, x_user_id),
    )


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_admin:
        raise PermissionDenied("administrator role required")
    return actor
