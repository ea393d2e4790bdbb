"""YouTube liveChatMessage resources to Events."""

import logging
import re
from datetime import datetime, timezone

from ..core.assets import AssetKind, AssetResolver
from ..core.errors import MalformedPayloadError
from ..core.models import Actor, Badge, Emote, Event, EventType, Platform, RawEvent
from .common import metric_event, parse_iso_timestamp, to_int

logger = logging.getLogger(__name__)

# SuperChat colour tiers by amount in the purchase currency
_SUPERCHAT_TIERS = [
    (100, "RED"),
    (50, "MAGENTA"),
    (20, "ORANGE"),
    (10, "YELLOW"),
    (5, "GREEN"),
    (2, "CYAN"),
    (0, "BLUE"),
]

SHORTCODE_RE = re.compile(r":[A-Za-z0-9_\-]+:")


def _get_superchat_tier(amount: float) -> str:
    """Map a SuperChat amount to a tier level."""
    for threshold, tier in _SUPERCHAT_TIERS:
        if amount >= threshold:
            return tier
    return "BLUE"


def _micros(value) -> float:
    return to_int(value) / 1_000_000


class YouTubeNormalizer:
    """One chat item in, at most one Event out."""

    def __init__(self, assets: AssetResolver | None = None) -> None:
        self._assets = assets

    def normalize(self, raw: RawEvent) -> list[Event]:
        if raw.kind == "chat_item":
            event = self.item(raw.payload)
            return [event] if event else []
        if raw.kind == "metric":
            return [
                metric_event(
                    Platform.YOUTUBE, raw.payload["name"], raw.payload["value"], raw.received_at
                )
            ]
        logger.debug(f"Ignoring YouTube payload kind {raw.kind}")
        return []

    def render_message(self, snippet: dict) -> tuple[str, list[tuple[int, int, Emote]]]:
        """Build message text with emoji spans.

        Structured runs are used when present; otherwise ``:shortcode:``
        tokens in the plain text are looked up. Unknown shortcodes stay text.
        """
        runs = snippet.get("textMessageDetails", {}).get("runs")
        if runs:
            return self._render_runs(runs)

        text = (
            snippet.get("textMessageDetails", {}).get("messageText")
            or snippet.get("displayMessage")
            or ""
        )
        emotes: list[tuple[int, int, Emote]] = []
        for match in SHORTCODE_RE.finditer(text):
            url = self._resolve_emoji(match.group())
            if url:
                emote = Emote(id=match.group(), name=match.group(), url=url, provider="youtube")
                emotes.append((match.start(), match.end(), emote))
        return text, emotes

    def _render_runs(self, runs: list[dict]) -> tuple[str, list[tuple[int, int, Emote]]]:
        text = ""
        emotes: list[tuple[int, int, Emote]] = []
        for run in runs:
            if "text" in run:
                text += run["text"]
                continue
            emoji = run.get("emoji")
            if not emoji:
                continue
            shortcuts = emoji.get("shortcuts") or []
            name = shortcuts[0] if shortcuts else emoji.get("emojiId", "")
            thumbnails = emoji.get("image", {}).get("thumbnails") or [{}]
            url = self._resolve_emoji(name) or thumbnails[0].get("url", "")
            if url:
                emote = Emote(
                    id=emoji.get("emojiId", name), name=name, url=url, provider="youtube"
                )
                emotes.append((len(text), len(text) + len(name), emote))
            text += name
        return text, emotes

    def _resolve_emoji(self, shortcode: str) -> str | None:
        if self._assets is None or not shortcode:
            return None
        return self._assets.resolve(AssetKind.EMOJI, shortcode)

    def _author(self, item: dict) -> Actor:
        author = item.get("authorDetails") or {}
        channel_id = author.get("channelId") or item["snippet"].get("authorChannelId", "")
        roles = [
            ("owner", author.get("isChatOwner")),
            ("moderator", author.get("isChatModerator")),
            ("member", author.get("isChatSponsor")),
            ("verified", author.get("isVerified")),
        ]
        badges = []
        for name, present in roles:
            if not present:
                continue
            image = ""
            if self._assets is not None:
                image = self._assets.resolve(AssetKind.BADGE, f"youtube/{name}") or ""
            badges.append(Badge(id=f"youtube/{name}", name=name, image_url=image))
        display = author.get("displayName") or channel_id
        return Actor(
            id=channel_id,
            username=display,
            display_name=display,
            avatar_url=author.get("profileImageUrl", ""),
            badges=badges,
        )

    def item(self, item: dict) -> Event | None:
        item_id = item.get("id")
        snippet = item.get("snippet")
        if not item_id or not isinstance(snippet, dict):
            raise MalformedPayloadError("chat item without id or snippet")

        item_type = snippet.get("type", "")
        actor = self._author(item)
        common = {
            "platform": Platform.YOUTUBE,
            "id": item_id,
            "actor": actor,
            "timestamp": parse_iso_timestamp(snippet.get("publishedAt"))
            or datetime.now(timezone.utc),
            "raw": item,
        }

        if item_type == "textMessageEvent":
            message, emotes = self.render_message(snippet)
            return Event(type=EventType.CHAT, message=message, emotes=emotes, **common)

        if item_type == "superChatEvent":
            details = snippet.get("superChatDetails", {})
            amount = _micros(details.get("amountMicros"))
            return Event(
                type=EventType.SUPERCHAT,
                amount=amount,
                currency=details.get("currency", ""),
                message=details.get("userComment", ""),
                extra={
                    "amount_display": details.get("amountDisplayString", ""),
                    "tier": details.get("tier"),
                    "tier_color": _get_superchat_tier(amount),
                },
                **common,
            )

        if item_type == "superStickerEvent":
            details = snippet.get("superStickerDetails", {})
            sticker = details.get("superStickerMetadata", {})
            return Event(
                type=EventType.SUPERSTICKER,
                amount=_micros(details.get("amountMicros")),
                currency=details.get("currency", ""),
                message=sticker.get("altText", ""),
                extra={
                    "amount_display": details.get("amountDisplayString", ""),
                    "tier": details.get("tier"),
                    "sticker_id": sticker.get("stickerId", ""),
                },
                **common,
            )

        if item_type == "newSponsorEvent":
            details = snippet.get("newSponsorDetails", {})
            return Event(
                type=EventType.MEMBERSHIP,
                extra={
                    "member_level": details.get("memberLevelName", ""),
                    "is_upgrade": bool(details.get("isUpgrade")),
                },
                **common,
            )

        if item_type == "memberMilestoneChatEvent":
            details = snippet.get("memberMilestoneChatDetails", {})
            return Event(
                type=EventType.MILESTONE,
                amount=float(to_int(details.get("memberMonth"))),
                currency="months",
                message=details.get("userComment", ""),
                extra={"member_level": details.get("memberLevelName", "")},
                **common,
            )

        if item_type == "membershipGiftingEvent":
            details = snippet.get("membershipGiftingDetails", {})
            return Event(
                type=EventType.GIFT_MEMBERSHIP_PURCHASE,
                amount=float(to_int(details.get("giftMembershipsCount"), 1)),
                currency="memberships",
                extra={
                    "gifter_id": actor.id,
                    "member_level": details.get("giftMembershipsLevelName", ""),
                },
                **common,
            )

        if item_type == "giftMembershipReceivedEvent":
            details = snippet.get("giftMembershipReceivedDetails", {})
            return Event(
                type=EventType.GIFT_MEMBERSHIP_RECEIVED,
                amount=1.0,
                currency="memberships",
                extra={
                    "gifter_id": details.get("gifterChannelId", ""),
                    "member_level": details.get("memberLevelName", ""),
                    "gifting_message_id": details.get(
                        "associatedMembershipGiftingMessageId", ""
                    ),
                },
                **common,
            )

        logger.debug(f"Ignoring YouTube chat item type {item_type}")
        return None
