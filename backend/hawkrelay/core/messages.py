"""
Signaling wire protocol: a closed set of JSON messages keyed by `action`.
"""
import json
from enum import Enum

from hawkrelay.core.errors import ProtocolError


class Action(str, Enum):
    STREAMER_JOIN = 'streamer_join'
    STREAMER_JOINED = 'streamer_joined'
    VIEWER_JOIN = 'viewer_join'
    VIEWER_JOINED = 'viewer_joined'
    VIEWER_LEFT = 'viewer_left'
    OFFER = 'offer'
    ANSWER = 'answer'
    ICE_CANDIDATE = 'ice_candidate'
    STREAMER_LEFT = 'streamer_left'
    DETECTIONS = 'detections'
    HEARTBEAT = 'heartbeat'
    ERROR = 'error'


# Fields a client must send for each inbound action
REQUIRED_FIELDS = {
    Action.STREAMER_JOIN: ('camera_id',),
    Action.VIEWER_JOIN: ('camera_id',),
    Action.OFFER: ('target', 'sdp'),
    Action.ANSWER: ('target', 'sdp'),
    Action.ICE_CANDIDATE: ('target', 'candidate'),
    Action.DETECTIONS: ('camera_id', 'result'),
    Action.HEARTBEAT: (),
}

# Actions the relay forwards to `target` without looking at the payload
ROUTED_ACTIONS = (Action.OFFER, Action.ANSWER, Action.ICE_CANDIDATE)


def make(action, **fields):
    msg = {'action': Action(action).value}
    msg.update({k: v for k, v in fields.items() if v is not None})
    return msg


def error(code, message, camera_id=None):
    return make(Action.ERROR, code=code, message=message, camera_id=camera_id)


def parse(raw):
    """Decode one inbound text frame and check it against REQUIRED_FIELDS.

    Returns the message dict with `action` normalised to an Action member.
    Raises ProtocolError on anything a well-behaved client would not send.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode('utf-8', errors='replace')
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"invalid JSON: {e}") from e
    if not isinstance(msg, dict):
        raise ProtocolError("message must be a JSON object")

    try:
        action = Action(msg.get('action'))
    except ValueError:
        raise ProtocolError(f"unknown action: {msg.get('action')!r}")
    if action not in REQUIRED_FIELDS:
        raise ProtocolError(f"action {action.value} is not accepted from clients")

    for field in REQUIRED_FIELDS[action]:
        value = msg.get(field)
        if value is None or value == '':
            raise ProtocolError(f"{action.value} requires '{field}'")
    for field in ('camera_id', 'target'):
        if field in msg and not isinstance(msg[field], str):
            raise ProtocolError(f"'{field}' must be a string")

    msg['action'] = action
    return msg


def parse_outbound(raw):
    """Decode a relay -> client frame. Clients accept any known action."""
    try:
        msg = json.loads(raw)
        msg['action'] = Action(msg.get('action'))
    except (TypeError, ValueError, AttributeError) as e:
        raise ProtocolError(f"unreadable relay message: {raw!r}") from e
    return msg
