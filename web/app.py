from __future__ import annotations

import hashlib
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    or_,
    select,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

# allow importing the parser from repo root
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from ledger_parser import (  # noqa: E402
    Amount,
    AutomaticCost,
    LedgerFileError,
    ParseError,
    ParsedEntries,
    decimal_to_json,
    parse_entries_from_file,
    parsed_entries_to_json,
    sum_amounts,
)


APP_DIR = Path(__file__).resolve().parent
CONFIG_PATH = APP_DIR / "config.json"
LEDGER_SUFFIXES = (".beancount", ".bean", ".ledger", ".txt")

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class LedgerFile(Base):
    __tablename__ = "ledgers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    original_filename: Mapped[str] = mapped_column(String(512), index=True, nullable=False)
    stored_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    content_sha256: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String(128), nullable=False)
    accounts_json: Mapped[str] = mapped_column(Text, nullable=False)
    entries_count: Mapped[int] = mapped_column(Integer, nullable=False)
    unhandled_count: Mapped[int] = mapped_column(Integer, nullable=False)
    parsed_json: Mapped[str] = mapped_column(Text, nullable=False)


class PostingRow(Base):
    __tablename__ = "postings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ledger_id: Mapped[int] = mapped_column(ForeignKey("ledgers.id"), index=True, nullable=False)
    ledger_name: Mapped[str] = mapped_column(String(512), index=True, nullable=False)
    transaction_index: Mapped[int] = mapped_column(Integer, nullable=False)

    date: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    flag: Mapped[str] = mapped_column(String(1), nullable=False)
    payee: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    narration: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    account: Mapped[str] = mapped_column(String(512), index=True, nullable=False)
    # Numbers are exact decimal strings.
    number: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    price_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    price_currency: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    cost_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    cost_currency: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    cost_automatic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


@dataclass(frozen=True)
class Scope:
    ledger_names: Set[str]
    account_prefixes: Tuple[str, ...]


@dataclass(frozen=True)
class User:
    username: str
    token: str
    role: str
    read_scope: Scope


class LoginRequest(BaseModel):
    token: str


def parse_scope(raw: Optional[list]) -> Scope:
    rules = raw or []
    if not isinstance(rules, list):
        raise RuntimeError("permission scope must be a list of typed rules")

    ledger_names: Set[str] = set()
    account_prefixes: List[str] = []

    for rule in rules:
        if not isinstance(rule, dict):
            raise RuntimeError("each permission rule must be an object")
        rule_type = str(rule.get("type", "")).strip()
        value = str(rule.get("value", "")).strip()
        if not rule_type or not value:
            continue
        if rule_type == "ledger":
            ledger_names.add(value)
        elif rule_type == "account_prefix":
            account_prefixes.append(value)
        else:
            raise RuntimeError(f"unsupported permission type: {rule_type}")

    return Scope(ledger_names=ledger_names, account_prefixes=tuple(account_prefixes))


def load_config(path: Path = CONFIG_PATH) -> dict:
    if not path.exists():
        raise RuntimeError(f"Missing config file: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def build_user_index(cfg: dict) -> Dict[str, User]:
    users: Dict[str, User] = {}
    for raw in cfg.get("users", []):
        token = str(raw.get("token", "")).strip()
        if not token:
            continue
        role = str(raw.get("role", "user")).strip().lower()
        perms = raw.get("permissions", {}) if role != "admin" else {}
        if role != "admin" and not isinstance(perms, dict):
            raise RuntimeError("permissions must be an object")
        if role != "admin" and "read" not in perms:
            raise RuntimeError("permissions.read is required for non-admin users")
        user = User(
            username=str(raw.get("username", "unknown")),
            token=token,
            role=role,
            read_scope=parse_scope(perms.get("read")),
        )
        users[token] = user
    return users


def resolve_path(raw: str) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = REPO_ROOT / path
    return path


def account_matches_prefix(account: str, prefix: str) -> bool:
    # Prefixes cover whole account segments only.
    return account == prefix or account.startswith(prefix + ":")


def account_in_scope(scope: Scope, account: str) -> bool:
    return any(account_matches_prefix(account, prefix) for prefix in scope.account_prefixes)


def has_full_ledger_access(user: User, ledger: LedgerFile) -> bool:
    if user.role == "admin":
        return True
    return ledger.original_filename in user.read_scope.ledger_names


def can_see_ledger_in_list(user: User, ledger: LedgerFile) -> bool:
    if has_full_ledger_access(user, ledger):
        return True
    accounts = json.loads(ledger.accounts_json)
    return any(account_in_scope(user.read_scope, account) for account in accounts)


def ensure_admin(user: User) -> None:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="admin permission required")


def parse_iso_date_or_400(raw: str, field_name: str) -> str:
    value = (raw or "").strip()
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"invalid {field_name}, expected YYYY-MM-DD")
    return parsed.isoformat()


def apply_posting_read_scope(stmt, user: User):
    if user.role == "admin":
        return stmt
    scope_predicates = []
    if user.read_scope.ledger_names:
        scope_predicates.append(PostingRow.ledger_name.in_(user.read_scope.ledger_names))
    for prefix in user.read_scope.account_prefixes:
        scope_predicates.append(
            or_(
                PostingRow.account == prefix,
                PostingRow.account.startswith(prefix + ":", autoescape=True),
            )
        )
    if not scope_predicates:
        # Return empty result for no read scope.
        return stmt.where(text("1 = 0"))
    return stmt.where(or_(*scope_predicates))


def collect_accounts(parsed: ParsedEntries) -> List[str]:
    accounts: Set[str] = set()
    for entry in parsed.open:
        accounts.add(entry.account)
    for entry in parsed.close:
        accounts.add(entry.account)
    for entry in parsed.balance:
        accounts.add(entry.account)
    for tx in parsed.transactions:
        accounts.update(p.account for p in tx.postings)
    return sorted(accounts)


def posting_rows(ledger: LedgerFile, parsed: ParsedEntries) -> List[PostingRow]:
    rows: List[PostingRow] = []
    for tx_index, tx in enumerate(parsed.transactions):
        for posting in tx.postings:
            price_amount = posting.price.amount if posting.price is not None else None
            cost_amount = (
                posting.cost.amount
                if posting.cost is not None and not isinstance(posting.cost, AutomaticCost)
                else None
            )
            rows.append(
                PostingRow(
                    ledger_id=ledger.id,
                    ledger_name=ledger.original_filename,
                    transaction_index=tx_index,
                    date=tx.date.isoformat(),
                    flag=tx.flag.value,
                    payee=tx.payee,
                    narration=tx.narration,
                    account=posting.account,
                    number=decimal_to_json(posting.amount.number),
                    currency=posting.amount.currency,
                    price_number=decimal_to_json(price_amount.number) if price_amount is not None else None,
                    price_currency=price_amount.currency if price_amount is not None else None,
                    cost_number=decimal_to_json(cost_amount.number) if cost_amount is not None else None,
                    cost_currency=cost_amount.currency if cost_amount is not None else None,
                    cost_automatic=isinstance(posting.cost, AutomaticCost),
                )
            )
    return rows


def posting_to_dict(row: PostingRow) -> dict:
    return {
        "id": row.id,
        "ledger_id": row.ledger_id,
        "ledger_name": row.ledger_name,
        "transaction_index": row.transaction_index,
        "date": row.date,
        "flag": row.flag,
        "payee": row.payee,
        "narration": row.narration,
        "account": row.account,
        "number": row.number,
        "currency": row.currency,
        "price": (
            {"number": row.price_number, "currency": row.price_currency}
            if row.price_number is not None
            else None
        ),
        "cost": (
            {"automatic": True, "amount": None}
            if row.cost_automatic
            else (
                {"automatic": False, "amount": {"number": row.cost_number, "currency": row.cost_currency}}
                if row.cost_number is not None
                else None
            )
        ),
    }


def create_app(cfg: Optional[dict] = None) -> FastAPI:
    cfg = cfg if cfg is not None else load_config()

    db_path = resolve_path(cfg.get("database", {}).get("sqlite_path", "web/data/app.db"))
    db_path.parent.mkdir(parents=True, exist_ok=True)

    upload_dir = resolve_path(cfg.get("storage", {}).get("upload_dir", "web/data/uploads"))
    upload_dir.mkdir(parents=True, exist_ok=True)

    engine = create_engine(f"sqlite+pysqlite:///{db_path}", future=True)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(engine)

    user_index = build_user_index(cfg)

    app = FastAPI(title="Ledger Management API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.get("server", {}).get("cors_origins", ["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    bearer = HTTPBearer(auto_error=False)

    def get_db() -> Session:
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def get_current_user(
        credentials: HTTPAuthorizationCredentials = Depends(bearer),
    ) -> User:
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(status_code=401, detail="missing bearer token")
        token = credentials.credentials.strip()
        user = user_index.get(token)
        if user is None:
            raise HTTPException(status_code=401, detail="invalid token")
        return user

    @app.get("/api/health")
    def health() -> dict:
        return {"ok": True}

    @app.post("/api/login")
    def login(payload: LoginRequest) -> dict:
        token = payload.token.strip()
        user = user_index.get(token)
        if not user:
            raise HTTPException(status_code=401, detail="invalid token")
        return {
            "username": user.username,
            "role": user.role,
            "token": user.token,
        }

    @app.get("/api/me")
    def me(user: User = Depends(get_current_user)) -> dict:
        return {
            "username": user.username,
            "role": user.role,
        }

    @app.post("/api/ledgers/upload")
    async def upload_ledger(
        file: UploadFile = File(...),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        ensure_admin(user)

        filename = os.path.basename(file.filename or "")
        if not filename.lower().endswith(LEDGER_SUFFIXES):
            raise HTTPException(
                status_code=400,
                detail=f"only {', '.join(LEDGER_SUFFIXES)} files are supported",
            )

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        stored_path = upload_dir / f"{stamp}_{filename}"

        digest = hashlib.sha256()
        with stored_path.open("wb") as out:
            while True:
                chunk = await file.read(1024 * 1024)
                if not chunk:
                    break
                digest.update(chunk)
                out.write(chunk)
        content_sha256 = digest.hexdigest()

        existing = db.scalars(
            select(LedgerFile).where(LedgerFile.content_sha256 == content_sha256)
        ).first()
        if existing is not None:
            stored_path.unlink(missing_ok=True)
            raise HTTPException(
                status_code=409,
                detail={
                    "message": "duplicate ledger detected",
                    "existing_ledger_id": existing.id,
                    "original_filename": existing.original_filename,
                },
            )

        try:
            parsed = parse_entries_from_file(stored_path, keep_errors=True, check_balances=True)
        except (ParseError, LedgerFileError) as e:
            stored_path.unlink(missing_ok=True)
            logger.warning("Rejected ledger upload %s: %s", filename, e)
            raise HTTPException(status_code=400, detail=f"parse failed: {e}")

        ledger = LedgerFile(
            original_filename=filename,
            stored_path=str(stored_path),
            content_sha256=content_sha256,
            uploaded_at=datetime.now(timezone.utc),
            uploaded_by=user.username,
            accounts_json=json.dumps(collect_accounts(parsed)),
            entries_count=len(parsed),
            unhandled_count=len(parsed.unhandled_entries),
            parsed_json=json.dumps(parsed_entries_to_json(parsed), ensure_ascii=False),
        )
        db.add(ledger)
        db.flush()

        rows = posting_rows(ledger, parsed)
        db.add_all(rows)
        db.commit()
        logger.info(
            "Stored ledger %s as id %d (%d entries, %d unhandled)",
            filename,
            ledger.id,
            ledger.entries_count,
            ledger.unhandled_count,
        )

        return {
            "ledger_id": ledger.id,
            "original_filename": ledger.original_filename,
            "counts": parsed.counts(),
            "postings_count": len(rows),
        }

    @app.get("/api/ledgers")
    def list_ledgers(
        limit: int = Query(default=500, ge=1, le=2000),
        offset: int = Query(default=0, ge=0),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        rows = db.scalars(select(LedgerFile).order_by(LedgerFile.id.desc())).all()
        visible: List[dict] = []
        for ledger in rows:
            if not can_see_ledger_in_list(user, ledger):
                continue
            has_full = has_full_ledger_access(user, ledger)
            visible.append(
                {
                    "id": ledger.id,
                    "original_filename": ledger.original_filename,
                    "uploaded_at": ledger.uploaded_at.isoformat(),
                    "uploaded_by": ledger.uploaded_by,
                    "entries_count": ledger.entries_count,
                    "unhandled_count": ledger.unhandled_count,
                    "can_view_raw": has_full,
                    "can_view_postings": True,
                }
            )

        total = len(visible)
        items = visible[offset : offset + limit]
        returned = len(items)
        return {
            "items": items,
            "offset": offset,
            "limit": limit,
            "returned": returned,
            "total": total,
            "has_more": offset + returned < total,
        }

    @app.get("/api/ledgers/{ledger_id}")
    def get_ledger(
        ledger_id: int,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        ledger = db.get(LedgerFile, ledger_id)
        if not ledger:
            raise HTTPException(status_code=404, detail="ledger not found")
        if not has_full_ledger_access(user, ledger):
            raise HTTPException(status_code=403, detail="forbidden")

        return {
            "id": ledger.id,
            "original_filename": ledger.original_filename,
            "uploaded_at": ledger.uploaded_at.isoformat(),
            "uploaded_by": ledger.uploaded_by,
            "parsed": json.loads(ledger.parsed_json),
        }

    @app.get("/api/ledgers/{ledger_id}/file")
    def get_ledger_file(
        ledger_id: int,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> FileResponse:
        ledger = db.get(LedgerFile, ledger_id)
        if not ledger:
            raise HTTPException(status_code=404, detail="ledger not found")
        if not has_full_ledger_access(user, ledger):
            raise HTTPException(status_code=403, detail="forbidden")
        path = Path(ledger.stored_path)
        if not path.exists():
            raise HTTPException(status_code=404, detail="file not found")
        return FileResponse(path=str(path), filename=ledger.original_filename, media_type="text/plain")

    @app.get("/api/postings")
    def list_postings(
        ledger_id: Optional[int] = Query(default=None),
        account: Optional[str] = Query(default=None),
        currency: Optional[str] = Query(default=None),
        date_from: Optional[str] = Query(default=None),
        date_to: Optional[str] = Query(default=None),
        q: Optional[str] = Query(default=None),
        limit: int = Query(default=500, ge=1, le=2000),
        offset: int = Query(default=0, ge=0),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        stmt = select(PostingRow).order_by(PostingRow.date.desc(), PostingRow.id.desc())

        start: Optional[str] = None
        end: Optional[str] = None
        if date_from:
            start = parse_iso_date_or_400(date_from, "date_from")
        if date_to:
            end = parse_iso_date_or_400(date_to, "date_to")
        if start and end and start > end:
            raise HTTPException(status_code=400, detail="date_from must be <= date_to")

        stmt = apply_posting_read_scope(stmt, user)

        if ledger_id is not None:
            stmt = stmt.where(PostingRow.ledger_id == ledger_id)
        if account:
            stmt = stmt.where(PostingRow.account.startswith(account, autoescape=True))
        if currency:
            stmt = stmt.where(PostingRow.currency == currency)
        if start:
            stmt = stmt.where(PostingRow.date >= start)
        if end:
            stmt = stmt.where(PostingRow.date <= end)
        if q:
            stmt = stmt.where(
                or_(PostingRow.payee.ilike(f"%{q}%"), PostingRow.narration.ilike(f"%{q}%"))
            )

        rows = db.scalars(stmt.offset(offset).limit(limit + 1)).all()
        has_more = len(rows) > limit
        rows = rows[:limit]
        out = [posting_to_dict(row) for row in rows]
        return {
            "items": out,
            "offset": offset,
            "limit": limit,
            "returned": len(out),
            "has_more": has_more,
        }

    @app.get("/api/ledger_summary")
    def get_ledger_summary(
        ledger_id: int = Query(..., ge=1),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        ledger = db.get(LedgerFile, ledger_id)
        if not ledger:
            raise HTTPException(status_code=404, detail="ledger not found")

        stmt = select(PostingRow).where(PostingRow.ledger_id == ledger_id)
        stmt = apply_posting_read_scope(stmt, user)
        rows = db.scalars(stmt).all()

        grouped: Dict[Tuple[str, str], List[Amount]] = {}
        posting_counts: Dict[str, int] = {}
        for row in rows:
            key = (row.account, row.currency)
            grouped.setdefault(key, []).append(Amount(number=Decimal(row.number), currency=row.currency))
            posting_counts[row.account] = posting_counts.get(row.account, 0) + 1
        totals = {key: sum_amounts(amounts).number for key, amounts in grouped.items()}

        accounts: List[dict] = []
        for account_name in sorted(posting_counts.keys()):
            accounts.append(
                {
                    "account": account_name,
                    "postings": posting_counts[account_name],
                    "totals": [
                        {"currency": ccy, "number": decimal_to_json(totals[(acc, ccy)])}
                        for acc, ccy in sorted(totals.keys())
                        if acc == account_name
                    ],
                }
            )

        show_meta = can_see_ledger_in_list(user, ledger)
        return {
            "ledger_id": ledger.id,
            "original_filename": ledger.original_filename if show_meta else None,
            "entries_count": ledger.entries_count if show_meta else None,
            "unhandled_count": ledger.unhandled_count if show_meta else None,
            "accounts": accounts,
        }

    return app
