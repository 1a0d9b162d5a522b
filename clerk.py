"""
AI shopping assistant

The model is asked to answer with a JSON object
``{"message": str, "products": [product ids], "action": {...} | null}`` but it
does not always comply, so `parse_reply` walks a chain of parsing tiers and
reports which one produced the result.
"""
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import stripe_service
from auth import get_current_user
from config import AppConfig, get_config
from database import create_document, get_db, get_documents, utcnow
from products import get_active_product, public_product, unit_price

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/clerk", tags=["clerk"])

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
FALLBACK_MESSAGE = "I'm here to help! What would you like to browse?"
NEGOTIATION_TTL = timedelta(hours=24)
HISTORY_LIMIT = 12
CATALOG_LIMIT = 60


class ClerkError(Exception):
    """The language model could not be reached."""


# Reply parsing

@dataclass
class ParsedReply:
    tier: str
    message: str
    products: List[str] = field(default_factory=list)
    action: Optional[Dict[str, Any]] = None


def _from_obj(obj: Any) -> Optional[Tuple[str, List[str], Optional[dict]]]:
    if not isinstance(obj, dict) or not obj.get("message"):
        return None
    products = obj.get("products") or []
    if not isinstance(products, list):
        products = []
    action = obj.get("action")
    if not isinstance(action, dict) or not action.get("type"):
        action = None
    return str(obj["message"]), [str(p) for p in products if p], action


def _loads(text: str) -> Optional[Tuple[str, List[str], Optional[dict]]]:
    try:
        return _from_obj(json.loads(text))
    except ValueError:
        return None


def _direct(raw: str):
    return _loads(raw.strip())


def _code_block(raw: str):
    match = re.search(r"```(?:json)?\s*\n?([\s\S]*?)\n?```", raw)
    return _loads(match.group(1).strip()) if match else None


def _outer_braces(raw: str) -> Optional[str]:
    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end <= start:
        return None
    return raw[start:end + 1]


def _brace(raw: str):
    candidate = _outer_braces(raw)
    return _loads(candidate) if candidate else None


def _repaired(raw: str):
    candidate = _outer_braces(raw)
    if not candidate:
        return None
    fixed = re.sub(r",\s*([\]}])", r"\1", candidate).replace("'", '"')
    return _loads(fixed)


def _partial(raw: str):
    # truncated output: keep whatever the message field has so far
    match = re.search(r'"message"\s*:\s*"((?:[^"\\]|\\.)*)', raw, re.IGNORECASE)
    if not match or not match.group(1):
        return None
    message = match.group(1).replace("\\n", "\n").replace('\\"', '"')
    return message, [], None


def _plain(raw: str):
    text = re.sub(r"```[\s\S]*?```", "", raw).strip()
    return text or FALLBACK_MESSAGE, [], None


TIERS: Tuple[Tuple[str, Callable[[str], Any]], ...] = (
    ("direct", _direct),
    ("code_block", _code_block),
    ("brace", _brace),
    ("repaired", _repaired),
    ("partial", _partial),
    ("plain", _plain),
)


def parse_reply(raw: Optional[str]) -> ParsedReply:
    raw = raw or ""
    for tier, parse in TIERS:
        parsed = parse(raw)
        if parsed:
            message, products, action = parsed
            return ParsedReply(tier, message, products, action)
    return ParsedReply("plain", FALLBACK_MESSAGE)


# Language model

def catalog_context(db: Database) -> List[Dict[str, Any]]:
    docs = get_documents(db, "product", {"is_active": True}, sort=[("created_at", -1)], limit=CATALOG_LIMIT)
    context = []
    for doc in docs:
        product = public_product(doc)
        context.append({
            "id": product["id"],
            "name": product.get("name"),
            "price": unit_price(doc),
            "category": product.get("category"),
            "tags": product.get("tags", []),
            "colors": (product.get("attributes") or {}).get("colors", []),
            "sizes": (product.get("attributes") or {}).get("sizes", []),
            "in_stock": product.get("stock", 0) > 0,
            # the floor itself stays on the server; /negotiate checks offers
            "negotiable": bool(doc.get("negotiation_enabled")),
        })
    return context


def build_prompt(catalog: List[Dict[str, Any]]) -> str:
    return (
        "You are the store's shopping assistant. Answer ONLY with a JSON object of the form "
        '{"message": "...", "products": ["<product id>", ...], "action": {"type": "...", "payload": {}} or null}. '
        "Recommend only products from this catalog:\n"
        + json.dumps(catalog, separators=(",", ":"))
    )


def generate_reply(config: AppConfig, system_prompt: str, history: List[Dict[str, str]], message: str) -> str:
    """Ask Gemini for a reply, falling through the configured models in order."""
    if not config.gemini_api_key:
        raise ClerkError("Assistant is not configured")

    contents = [{"role": "user", "parts": [{"text": system_prompt}]}]
    for turn in history[-HISTORY_LIMIT:]:
        role = "model" if turn.get("role") == "assistant" else "user"
        contents.append({"role": role, "parts": [{"text": turn.get("content", "")}]})
    contents.append({"role": "user", "parts": [{"text": message}]})
    body = {
        "contents": contents,
        "generationConfig": {"temperature": 0.8, "topP": 0.95, "maxOutputTokens": 2048},
    }

    for model in config.gemini_models:
        url = f"{GEMINI_BASE_URL}/{model}:generateContent"
        try:
            response = requests.post(url, params={"key": config.gemini_api_key}, json=body, timeout=30)
        except requests.RequestException as exc:
            logger.warning("Gemini model %s unreachable: %s", model, exc)
            continue
        if response.status_code != 200:
            logger.warning("Gemini model %s returned %s", model, response.status_code)
            continue
        data = response.json()
        candidates = data.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or [{}]
        if candidates[0].get("finishReason") == "MAX_TOKENS":
            logger.warning("Gemini reply from %s was truncated", model)
        return parts[0].get("text", "")
    raise ClerkError("All assistant models failed")


# Schemas (request)

class ChatTurn(BaseModel):
    role: str
    content: str


class ChatIn(BaseModel):
    message: str = Field(..., min_length=1)
    history: List[ChatTurn] = Field(default_factory=list)


class NegotiateIn(BaseModel):
    product_id: str
    offer_price: float = Field(..., gt=0)


def _resolve_products(db: Database, ids: List[str]) -> List[dict]:
    oids = [ObjectId(i) for i in ids if ObjectId.is_valid(i)]
    if not oids:
        return []
    found = {str(d["_id"]): d for d in db["product"].find({"_id": {"$in": oids}, "is_active": True})}
    return [public_product(found[i]) for i in ids if i in found]


@router.post("/chat")
def chat(payload: ChatIn, db: Database = Depends(get_db), config: AppConfig = Depends(get_config)):
    prompt = build_prompt(catalog_context(db))
    try:
        raw = generate_reply(config, prompt, [t.model_dump() for t in payload.history], payload.message)
    except ClerkError as exc:
        logger.error("Assistant unavailable: %s", exc)
        raise HTTPException(status_code=503, detail="Assistant is unavailable right now")

    reply = parse_reply(raw)
    if reply.tier != "direct":
        logger.info("Assistant reply parsed with the %s tier", reply.tier)
    return {
        "message": reply.message,
        "products": _resolve_products(db, reply.products),
        "action": reply.action,
        "parse_tier": reply.tier,
    }


@router.post("/negotiate", status_code=201)
def negotiate(payload: NegotiateIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db),
              config: AppConfig = Depends(get_config)):
    product = get_active_product(db, payload.product_id)
    floor = product.get("hidden_bottom_price")
    if not product.get("negotiation_enabled") or floor is None:
        raise HTTPException(status_code=400, detail="This product is not open to offers")

    price = unit_price(product)
    offer = round(payload.offer_price, 2)
    if offer >= price:
        raise HTTPException(status_code=400, detail="Your offer is already at or above the current price")
    if offer < floor:
        raise HTTPException(status_code=400, detail="Sorry, that offer is too low for this item")

    uid = str(user["_id"])
    doc = {
        "code": f"DEAL-{uuid.uuid4().hex[:6].upper()}",
        "description": f"Negotiated price for {product['name']}",
        "discount_type": "fixed",
        "discount_value": round(price - offer, 2),
        "min_purchase": 0,
        "max_discount": None,
        "starts_at": None,
        "expires_at": utcnow() + NEGOTIATION_TTL,
        "is_active": True,
        "usage_limit": 1,
        "usage_count": 0,
        "one_time_per_user": True,
        "used_by": [],
        "source": "negotiation",
        "negotiation_meta": {
            "user_id": uid,
            "product_id": str(product["_id"]),
            "original_price": price,
            "agreed_price": offer,
        },
        "stripe_coupon_id": None,
        "stripe_promotion_code_id": None,
    }
    try:
        coupon = create_document(db, "coupon", doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Could not issue a coupon, please try again")

    stripe_ids = stripe_service.create_stripe_coupon(config, coupon)
    db["coupon"].update_one({"_id": coupon["_id"]}, {"$set": stripe_ids})
    logger.info("Negotiation coupon %s issued to user %s for product %s", coupon["code"], uid, product["_id"])
    return {
        "coupon_code": coupon["code"],
        "discount_amount": doc["discount_value"],
        "effective_price": offer,
        "expires_at": doc["expires_at"],
    }
