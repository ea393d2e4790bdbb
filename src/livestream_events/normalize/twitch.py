"""Twitch IRC and Helix payloads to Events."""

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from ..core.assets import AssetKind, AssetResolver
from ..core.errors import MalformedPayloadError
from ..core.models import (
    Actor,
    Badge,
    Emote,
    Event,
    EventType,
    Platform,
    RawEvent,
    anonymous_actor,
)
from .common import metric_event, parse_epoch_ms, parse_iso_timestamp, to_int

logger = logging.getLogger(__name__)

ANONYMOUS_GIFTER_LOGIN = "ananonymousgifter"

SUB_PLANS = {
    "Prime": "Prime",
    "1000": "Tier 1",
    "2000": "Tier 2",
    "3000": "Tier 3",
}


def parse_emote_positions(emotes_tag: str, text: str = "") -> list[tuple[int, int, Emote]]:
    """Parse Twitch emote positions from IRC tags.

    Format: emote_id:start-end,start-end/emote_id:start-end
    Names are taken from ``text`` when it is given.
    """
    positions: list[tuple[int, int, Emote]] = []
    if not emotes_tag:
        return positions

    for emote_section in emotes_tag.split("/"):
        if ":" not in emote_section:
            continue
        emote_id, ranges = emote_section.split(":", 1)
        for range_str in ranges.split(","):
            if "-" not in range_str:
                continue
            start_str, end_str = range_str.split("-", 1)
            try:
                start = int(start_str)
                end = int(end_str) + 1  # Twitch uses inclusive end
            except ValueError:
                continue
            name = text[start:end] if end <= len(text) else ""
            emote = Emote(
                id=emote_id,
                name=name,
                url=f"https://static-cdn.jtvnw.net/emoticons/v2/{emote_id}/default/dark/2.0",
                provider="twitch",
            )
            positions.append((start, end, emote))

    return sorted(positions, key=lambda x: x[0])


def parse_badges(badges_tag: str) -> list[Badge]:
    """Parse Twitch badges from IRC tags.

    Format: badge_name/version,badge_name/version
    """
    badges: list[Badge] = []
    if not badges_tag:
        return badges

    for badge_str in badges_tag.split(","):
        if "/" in badge_str:
            name, version = badge_str.split("/", 1)
            badges.append(Badge(id=f"{name}/{version}", name=name))

    return badges


def _timestamp(tags: dict[str, str]) -> datetime:
    return parse_epoch_ms(tags.get("tmi-sent-ts")) or datetime.now(timezone.utc)


class TwitchNormalizer:
    """Maps PRIVMSG, USERNOTICE, follower and metric payloads."""

    def __init__(
        self,
        assets: AssetResolver | None = None,
        avatars: Callable[[str], str | None] | None = None,
    ) -> None:
        self._assets = assets
        self._avatars = avatars

    def normalize(self, raw: RawEvent) -> list[Event]:
        if raw.kind == "privmsg":
            return self._privmsg(raw.payload)
        if raw.kind == "usernotice":
            event = self._usernotice(raw.payload)
            return [event] if event else []
        if raw.kind == "follower":
            return [self._follower(raw.payload)]
        if raw.kind == "metric":
            return [
                metric_event(
                    Platform.TWITCH, raw.payload["name"], raw.payload["value"], raw.received_at
                )
            ]
        logger.debug(f"Ignoring Twitch payload kind {raw.kind}")
        return []

    def _avatar(self, login: str) -> str:
        if self._avatars is None or not login:
            return ""
        return self._avatars(login) or ""

    def _badges(self, tags: dict[str, str]) -> list[Badge]:
        badges = parse_badges(tags.get("badges", ""))
        if self._assets is not None:
            for badge in badges:
                badge.image_url = self._assets.resolve(AssetKind.BADGE, badge.id) or ""
        return badges

    def _sender(self, parsed: dict) -> Actor:
        tags = parsed["tags"]
        prefix = parsed.get("prefix", "")
        login = tags.get("login") or (prefix.split("!")[0] if "!" in prefix else "")
        return Actor(
            id=tags.get("user-id", ""),
            username=login,
            display_name=tags.get("display-name") or login,
            avatar_url=self._avatar(login),
            badges=self._badges(tags),
        )

    def _privmsg(self, parsed: dict) -> list[Event]:
        tags = parsed["tags"]
        text = parsed.get("trailing", "")

        if text.startswith("\x01ACTION ") and text.endswith("\x01"):
            text = text[8:-1]

        actor = self._sender(parsed)
        timestamp = _timestamp(tags)
        msg_id = tags.get("id") or f"{actor.id or actor.username}:{tags.get('tmi-sent-ts', '')}"
        if not actor.username and not actor.id:
            raise MalformedPayloadError(f"PRIVMSG without sender: {msg_id}")

        events = [
            Event(
                platform=Platform.TWITCH,
                type=EventType.CHAT,
                id=msg_id,
                actor=actor,
                timestamp=timestamp,
                message=text,
                emotes=parse_emote_positions(tags.get("emotes", ""), text),
                extra={"color": tags.get("color", "")},
                raw=parsed,
            )
        ]

        bits = to_int(tags.get("bits"))
        if bits > 0:
            events.append(
                Event(
                    platform=Platform.TWITCH,
                    type=EventType.BITS,
                    id=f"{msg_id}:bits",
                    actor=actor,
                    timestamp=timestamp,
                    amount=float(bits),
                    currency="bits",
                    message=text,
                    raw=parsed,
                )
            )
        return events

    def _usernotice(self, parsed: dict) -> Event | None:
        tags = parsed["tags"]
        msg_type = tags.get("msg-id", "")
        msg_id = tags.get("id")
        if not msg_id:
            raise MalformedPayloadError(f"USERNOTICE {msg_type} without id")

        sender = self._sender(parsed)
        if sender.username == ANONYMOUS_GIFTER_LOGIN:
            sender = anonymous_actor()
        plan = tags.get("msg-param-sub-plan", "1000")
        common = {
            "platform": Platform.TWITCH,
            "id": msg_id,
            "timestamp": _timestamp(tags),
            "raw": parsed,
        }
        extra = {"system_msg": tags.get("system-msg", ""), "plan": plan}

        if msg_type in ("sub", "resub"):
            extra["tier"] = SUB_PLANS.get(plan, plan)
            return Event(
                type=EventType.SUBSCRIPTION,
                actor=sender,
                amount=float(max(1, to_int(tags.get("msg-param-cumulative-months"), 1))),
                currency="months",
                message=parsed.get("trailing", ""),
                extra=extra,
                **common,
            )

        if msg_type == "subgift":
            recipient_login = tags.get("msg-param-recipient-user-name", "")
            recipient = Actor(
                id=tags.get("msg-param-recipient-id", ""),
                username=recipient_login,
                display_name=tags.get("msg-param-recipient-display-name") or recipient_login,
                avatar_url=self._avatar(recipient_login),
            )
            extra["tier"] = SUB_PLANS.get(plan, plan)
            extra["gifter_id"] = tags.get("user-id", "")
            extra["months"] = max(1, to_int(tags.get("msg-param-gift-months"), 1))
            return Event(
                type=EventType.GIFT_SUBSCRIPTION,
                actor=recipient,
                counterpart=sender,
                amount=1.0,
                currency="subs",
                extra=extra,
                **common,
            )

        if msg_type == "submysterygift":
            extra["tier"] = SUB_PLANS.get(plan, plan)
            extra["gifter_id"] = tags.get("user-id", "")
            return Event(
                type=EventType.GIFT_PURCHASE,
                actor=sender,
                amount=float(to_int(tags.get("msg-param-mass-gift-count"), 1)),
                currency="subs",
                extra=extra,
                **common,
            )

        if msg_type == "raid":
            login = tags.get("msg-param-login") or sender.username
            raider = Actor(
                id=sender.id,
                username=login,
                display_name=tags.get("msg-param-displayName") or sender.display_name,
                avatar_url=tags.get("msg-param-profileImageURL") or sender.avatar_url,
            )
            return Event(
                type=EventType.RAID,
                actor=raider,
                amount=float(to_int(tags.get("msg-param-viewerCount"))),
                currency="viewers",
                extra={"system_msg": extra["system_msg"]},
                **common,
            )

        logger.debug(f"Ignoring USERNOTICE msg-id={msg_type}")
        return None

    def _follower(self, follower: dict) -> Event:
        user_id = follower.get("user_id", "")
        login = follower.get("user_login", "")
        if not user_id:
            raise MalformedPayloadError("follower without user_id")
        return Event(
            platform=Platform.TWITCH,
            type=EventType.FOLLOW,
            id=f"follow:{user_id}",
            actor=Actor(
                id=user_id,
                username=login,
                display_name=follower.get("user_name") or login,
                avatar_url=self._avatar(login),
            ),
            timestamp=parse_iso_timestamp(follower.get("followed_at"))
            or datetime.now(timezone.utc),
            raw=follower,
        )
