# Parsing of inbound WeChat webhook messages and the scan-to-login
# event handling that resolves a login session.

import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass

from app.services.sessions import SessionStore, WeChatUserInfo

logger = logging.getLogger(__name__)

SUBSCRIBE_SCENE_PREFIX = "qrscene_"

EVENT_SUBSCRIBE = "subscribe"
EVENT_SCAN = "SCAN"

# User-facing replies
REPLY_LOGIN_SUCCESS = "登录成功，请返回网页继续操作"
REPLY_WELCOME_LOGIN_SUCCESS = "感谢关注！登录成功，请返回网页继续操作"
REPLY_QRCODE_EXPIRED = "二维码已失效，请在网页上刷新二维码后重新扫码"
REPLY_WELCOME_QRCODE_EXPIRED = "感谢关注！二维码已失效，请在网页上刷新二维码后重新扫码"
REPLY_LOGIN_FAILED = "登录失败，请重新扫码"
REPLY_WELCOME = "感谢关注！请在网页上使用微信扫码登录"
REPLY_HINT = "请在网页上使用微信扫描二维码登录"


class MessageParseError(ValueError):
    """Raised when a webhook body is not a well-formed WeChat message."""


@dataclass
class WeChatMessage:
    to_user_name: str
    from_user_name: str
    create_time: int
    msg_type: str
    content: str = ""
    msg_id: str = ""
    event: str = ""
    event_key: str = ""
    ticket: str = ""

    @classmethod
    def from_xml(cls, body: bytes) -> "WeChatMessage":
        try:
            root = ET.fromstring(body)
        except ET.ParseError as e:
            raise MessageParseError(f"Invalid message XML: {e}") from e

        if root.tag != "xml":
            raise MessageParseError(f"Unexpected root element: {root.tag}")

        def text(tag: str) -> str:
            return (root.findtext(tag) or "").strip()

        from_user = text("FromUserName")
        msg_type = text("MsgType")
        if not from_user or not msg_type:
            raise MessageParseError("Message is missing FromUserName or MsgType")

        create_time = text("CreateTime")
        try:
            created = int(create_time) if create_time else 0
        except ValueError as e:
            raise MessageParseError(f"Invalid CreateTime: {create_time}") from e

        return cls(
            to_user_name=text("ToUserName"),
            from_user_name=from_user,
            create_time=created,
            msg_type=msg_type,
            content=text("Content"),
            msg_id=text("MsgId"),
            event=text("Event"),
            event_key=text("EventKey"),
            ticket=text("Ticket"),
        )

    @property
    def is_scan_event(self) -> bool:
        return self.msg_type == "event" and self.event in (EVENT_SUBSCRIBE, EVENT_SCAN)


def extract_scene_id(message: WeChatMessage) -> str | None:
    """
    Subscribe events carry the scene as "qrscene_<scene>", scan events by
    already-following users carry the bare scene.
    """
    if message.msg_type != "event":
        return None

    if message.event == EVENT_SUBSCRIBE:
        if not message.event_key.startswith(SUBSCRIBE_SCENE_PREFIX):
            return None
        scene_id = message.event_key[len(SUBSCRIBE_SCENE_PREFIX):]
    elif message.event == EVENT_SCAN:
        scene_id = message.event_key
    else:
        return None

    return scene_id or None


def handle_scan_event(message: WeChatMessage, store: SessionStore) -> str:
    subscribed = message.event == EVENT_SUBSCRIBE
    scene_id = extract_scene_id(message)
    if scene_id is None:
        if subscribed:
            return REPLY_WELCOME
        logger.warning(f"Scan event without scene: from={message.from_user_name}")
        return REPLY_QRCODE_EXPIRED

    session = store.get_by_scene(scene_id)
    if session is None:
        logger.info(f"No login session found for scene: {scene_id}")
        return REPLY_WELCOME_QRCODE_EXPIRED if subscribed else REPLY_QRCODE_EXPIRED

    openid = message.from_user_name
    if not store.update_by_scene(scene_id, openid, WeChatUserInfo(openid=openid)):
        logger.warning(f"Failed to update login session: scene={scene_id}")
        return REPLY_LOGIN_FAILED

    logger.info(f"Scan login succeeded: scene={scene_id}, wechat={openid}")
    return REPLY_WELCOME_LOGIN_SUCCESS if subscribed else REPLY_LOGIN_SUCCESS


def handle_message(message: WeChatMessage, store: SessionStore) -> str:
    """Returns the text to reply with, or "" for no reply."""
    logger.info(
        f"Received WeChat message: type={message.msg_type}, from={message.from_user_name}, "
        f"event={message.event}, key={message.event_key}"
    )

    if message.is_scan_event:
        return handle_scan_event(message, store)

    if message.msg_type == "event":
        # unsubscribe, menu clicks and the like need no reply
        return ""

    return REPLY_HINT


def build_reply_xml(message: WeChatMessage, content: str, now: float | None = None) -> bytes:
    root = ET.Element("xml")
    fields = (
        ("ToUserName", message.from_user_name),
        ("FromUserName", message.to_user_name),
        ("CreateTime", str(int(time.time() if now is None else now))),
        ("MsgType", "text"),
        ("Content", content),
    )
    for tag, value in fields:
        ET.SubElement(root, tag).text = value
    return ET.tostring(root, encoding="utf-8", xml_declaration=False)
