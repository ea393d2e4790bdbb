"""TikTok relay frames to Events.

The relay republishes TikTok-Live-Connector events as
``{"event": "<name>", "data": {...}}`` JSON frames.
"""

import logging
from datetime import datetime

from ..core.errors import MalformedPayloadError
from ..core.models import Actor, Emote, Event, EventType, Platform, RawEvent
from .common import is_truthy, metric_event, parse_epoch_ms, to_int

logger = logging.getLogger(__name__)

# giftType 1 gifts can be sent as a combo streak
STACKABLE_GIFT_TYPE = 1


def _actor(data: dict) -> Actor:
    unique_id = data.get("uniqueId", "")
    return Actor(
        id=str(data.get("userId", "")),
        username=unique_id,
        display_name=data.get("nickname") or unique_id,
        avatar_url=data.get("profilePictureUrl", ""),
    )


def _frame_id(event_name: str, data: dict, received_at: datetime) -> str:
    """The relay's msgId, or a composite key when it is missing."""
    msg_id = data.get("msgId")
    if msg_id:
        return str(msg_id)
    stamp = data.get("createTime") or int(received_at.timestamp() * 1000)
    return f"{event_name}:{data.get('uniqueId', '')}:{data.get('repeatCount', '')}:{stamp}"


def chat_emotes(data: dict) -> list[tuple[int, int, Emote]]:
    """Emotes of a chat frame as zero-width spans at their insert position."""
    emotes = []
    for item in data.get("emotes") or []:
        url = item.get("emoteImageUrl", "")
        if not url:
            continue
        pos = to_int(item.get("placeInComment"))
        emote_id = str(item.get("emoteId", ""))
        emotes.append((pos, pos, Emote(id=emote_id, name="", url=url, provider="tiktok")))
    return emotes


class TikTokNormalizer:
    """Maps chat, gift, follow, subscribe, roomUser and like frames."""

    def normalize(self, raw: RawEvent) -> list[Event]:
        if raw.kind != "frame":
            logger.debug(f"Ignoring TikTok payload kind {raw.kind}")
            return []

        event_name = raw.payload.get("event")
        data = raw.payload.get("data")
        if not event_name or not isinstance(data, dict):
            raise MalformedPayloadError("relay frame without event or data")

        when = parse_epoch_ms(data.get("createTime")) or raw.received_at
        if event_name == "roomUser":
            return [metric_event(Platform.TIKTOK, "viewers", to_int(data.get("viewerCount")), when)]
        if event_name == "like":
            total = data.get("totalLikeCount")
            if total is None:
                return []
            return [metric_event(Platform.TIKTOK, "likes", to_int(total), when)]

        actor = _actor(data)
        if not actor.username:
            raise MalformedPayloadError(f"{event_name} frame without uniqueId")
        common = {
            "platform": Platform.TIKTOK,
            "id": _frame_id(event_name, data, raw.received_at),
            "actor": actor,
            "timestamp": when,
            "raw": raw.payload,
        }

        if event_name == "chat":
            return [
                Event(
                    type=EventType.CHAT,
                    message=data.get("comment", ""),
                    emotes=chat_emotes(data),
                    **common,
                )
            ]

        if event_name == "gift":
            return [self._gift(data, common)]

        if event_name == "follow" or (
            event_name == "social" and "follow" in str(data.get("displayType", "")).lower()
        ):
            common["id"] = str(data.get("msgId") or f"follow:{actor.username}")
            return [Event(type=EventType.FOLLOW, **common)]

        if event_name == "subscribe":
            return [
                Event(
                    type=EventType.SUBSCRIPTION,
                    amount=float(max(1, to_int(data.get("subMonth"), 1))),
                    currency="months",
                    **common,
                )
            ]

        logger.debug(f"Ignoring TikTok relay event {event_name}")
        return []

    @staticmethod
    def _gift(data: dict, common: dict) -> Event:
        diamond_count = to_int(data.get("diamondCount"))
        repeat_count = max(1, to_int(data.get("repeatCount"), 1))
        stackable = to_int(data.get("giftType")) == STACKABLE_GIFT_TYPE
        return Event(
            type=EventType.GIFT,
            amount=float(diamond_count * repeat_count),
            currency="diamonds",
            extra={
                "gift_name": data.get("giftName", ""),
                "gift_id": data.get("giftId"),
                "gift_picture_url": data.get("giftPictureUrl", ""),
                "diamond_count": diamond_count,
                "repeat_count": repeat_count,
                "stackable": stackable,
                "repeat_end": is_truthy(data.get("repeatEnd")),
            },
            **common,
        )
