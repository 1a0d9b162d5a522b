"""
Package tracking view.

There is no carrier integration: the timeline is projected from the order
status plus whatever tracking fields an admin typed in. Stages without a
recorded history entry get a timestamp at a fixed offset from order creation.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

STAGES = (
    # (stage, label, description, history status, offset from creation)
    ("order_placed", "Order Placed", "We received your order", "pending", timedelta(0)),
    ("payment_confirmed", "Payment Confirmed", "Your payment was successful", "paid", timedelta(minutes=5)),
    ("processing", "Processing", "Your order is being prepared", "processing", timedelta(days=1)),
    ("shipped", "Shipped", "Your package is on its way", "shipped", timedelta(days=2)),
    ("delivered", "Delivered", "Your package was delivered", "delivered", timedelta(days=5)),
)

# Number of stages reached for each order status
STATUS_RANK = {"pending": 1, "paid": 2, "processing": 3, "shipped": 4, "delivered": 5}

STATUS_TEXT = {
    "pending": "Awaiting payment",
    "paid": "Payment confirmed",
    "processing": "Preparing your order",
    "shipped": "In transit",
    "delivered": "Delivered",
    "cancelled": "Order cancelled",
    "refunded": "Order refunded",
}

DEFAULT_DELIVERY_WINDOW = timedelta(days=7)


def _history_time(history: List[Dict[str, Any]], status: str) -> Optional[datetime]:
    times = [h["timestamp"] for h in history if h.get("status") == status and h.get("timestamp")]
    return min(times) if times else None


def build_timeline(order: Dict[str, Any]) -> List[Dict[str, Any]]:
    status = order.get("status", "pending")
    created_at = order["created_at"]
    history = (order.get("tracking") or {}).get("history", [])
    location = (order.get("tracking") or {}).get("current_location")
    stopped = status not in STATUS_RANK
    if stopped:
        # cancelled or refunded: keep only the stages the history proves
        reached = max([STATUS_RANK.get(h.get("status"), 1) for h in history] or [1])
    else:
        reached = STATUS_RANK[status]

    timeline = []
    for index, (stage, label, description, hist_status, offset) in enumerate(STAGES, start=1):
        completed = index <= reached
        timestamp = _history_time(history, hist_status)
        if stage == "order_placed":
            timestamp = created_at
        elif timestamp is None and completed:
            timestamp = created_at + offset
        timeline.append({
            "status": stage,
            "label": label,
            "description": description,
            "completed": completed,
            "is_current": index == reached and not stopped,
            "timestamp": timestamp if completed else None,
            "location": location if index == reached and not stopped else None,
        })
    return timeline


def progress_for(status: str) -> int:
    if status not in STATUS_RANK:
        return 0
    return int(round(STATUS_RANK[status] / len(STAGES) * 100))


def build_tracking(order: Dict[str, Any], include_private: bool = True) -> Dict[str, Any]:
    """Project an order into the tracking payload.

    With include_private=False the payload carries nothing that identifies the
    buyer (no address, no items, no user id); that is what the public lookup
    by tracking number returns.
    """
    tracking = order.get("tracking") or {}
    status = order.get("status", "pending")
    estimated = tracking.get("estimated_delivery") or order["created_at"] + DEFAULT_DELIVERY_WINDOW
    view = {
        "order_id": str(order["_id"]),
        "order_number": order.get("order_number"),
        "tracking_number": tracking.get("tracking_number"),
        "status": status,
        "status_text": STATUS_TEXT.get(status, status),
        "carrier": tracking.get("carrier"),
        "estimated_delivery": estimated,
        "current_location": tracking.get("current_location"),
        "progress": progress_for(status),
        "timeline": build_timeline(order),
        "last_update": tracking.get("last_update") or order.get("updated_at") or order["created_at"],
    }
    if include_private:
        view["shipping_address"] = order.get("shipping_address")
        view["items"] = order.get("items", [])
    else:
        del view["order_id"]
    return view
