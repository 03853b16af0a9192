"""
Love-note composition.
Picks a template for the recipient's relationship and fills in their name.
Randomness comes from an injected random.Random so tests can seed it.
"""
import random
from typing import Dict, Optional, Sequence

NAME_PLACEHOLDER = "{name}"
DEFAULT_BUCKET = "default"

MESSAGE_TEMPLATES: Dict[str, Sequence[str]] = {
    "spouse": (
        "Hey {name}, your partner loves you deeply ❤️",
        "{name}, you are appreciated more than you know 💍",
        "{name}, your spouse is thinking about you right now 💕",
    ),
    "girlfriend": (
        "{name}, you are loved more every single day 💖",
        "{name}, someone can't stop thinking about you 🌹",
        "A reminder that you're adored, {name} ❤️",
    ),
    "boyfriend": (
        "Hey {name}, someone is proud of you 💙",
        "{name}, you're appreciated more than you know 💌",
        "Someone loves you like crazy, {name} 😘",
    ),
    "mom": (
        "{name}, you are the heart of your family ❤️",
        "{name}, you mean more than words can say 🌷",
        "Sending appreciation your way, {name} 💞",
    ),
    "dad": (
        "{name}, you're stronger than you realize 💙",
        "{name}, someone appreciates everything you do 💪",
        "You are loved, {name} 💌",
    ),
    "sister": (
        "{name}, you're an amazing sister 💕",
        "{name}, someone is grateful for you ✨",
        "You're loved and appreciated, {name} 💖",
    ),
    "brother": (
        "{name}, someone is proud of you ❤️",
        "{name}, you're appreciated more than you know 💙",
        "You matter, {name} 💌",
    ),
    "friend": (
        "Hey {name}, you're a great friend 😊",
        "{name}, someone is thinking about you 💛",
        "Sending a little love your way, {name} ✨",
    ),
    DEFAULT_BUCKET: (
        "Hey {name}, someone cares about you ❤️",
        "{name}, here's a message to brighten your day ✨",
        "Sending a little love your way, {name} 💌",
    ),
}

_UNSAFE_CHARS = str.maketrans("", "", "<>'\"")


def sanitize(value: Optional[str]) -> str:
    """Strip characters that could open a tag or break out of an attribute."""
    if value is None:
        return ""
    return str(value).translate(_UNSAFE_CHARS).strip()


class MessageComposer:
    def __init__(self, rng: Optional[random.Random] = None, templates: Optional[Dict[str, Sequence[str]]] = None):
        self._rng = rng or random.Random()
        self._templates = {key.lower(): tuple(value) for key, value in (templates or MESSAGE_TEMPLATES).items()}
        if DEFAULT_BUCKET not in self._templates:
            raise ValueError("templates must include a 'default' bucket")

    def bucket_for(self, relationship: Optional[str]) -> str:
        key = (relationship or "").strip().lower()
        return key if key in self._templates else DEFAULT_BUCKET

    def templates_for(self, relationship: Optional[str]) -> Sequence[str]:
        return self._templates[self.bucket_for(relationship)]

    def compose(self, recipient_name: Optional[str], relationship: Optional[str]) -> str:
        template = self._rng.choice(self.templates_for(relationship))
        return template.replace(NAME_PLACEHOLDER, sanitize(recipient_name))


def build_flower_message(note: Optional[str]) -> str:
    message = "🌸 You received a flower!"
    note = sanitize(note)
    if note:
        message += f" {note}"
    return message


def build_love_email_html(name: Optional[str], message: str, unsubscribe_url: str) -> str:
    return f"""
    <div style="font-family:Arial;padding:25px;background:#fff3f8;border-radius:14px;">
        <h2 style="margin:0;color:#d6336c;">A Message For {sanitize(name)} ❤️</h2>
        <p style="font-size:17px;line-height:1.6;color:#333;">{message}</p>
        <br>
        <a href="{unsubscribe_url}" style="color:#777;font-size:13px;text-decoration:none;">
            Unsubscribe from these messages
        </a>
    </div>
    """.strip()


def build_love_email_text(message: str, unsubscribe_url: str) -> str:
    return f"{message}\n\nUnsubscribe: {unsubscribe_url}"


def build_sms_text(message: str, unsubscribe_url: str) -> str:
    return f"{message}\nStop: {unsubscribe_url}"
