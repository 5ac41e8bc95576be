from datetime import date

from flask import current_app
from flask_socketio import join_room, leave_room, emit
from thebox import socketio
from thebox.services.daily.generator import today_utc
from thebox.services.daily.leaderboard import challenge_room


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def _room_from(data):
    """Room for the requested challenge date; today's challenge when omitted."""
    raw = (data or {}).get('date')
    if not raw:
        return challenge_room(today_utc())
    try:
        return challenge_room(date.fromisoformat(str(raw)))
    except ValueError:
        return None


def handle_join_challenge(data):
    room = _room_from(data)
    if not room:
        emit('error', {'message': 'date must be YYYY-MM-DD'})
        return
    join_room(room)
    current_app.logger.info(f"[ws-join] room={room}")
    emit('joined', {'room': room})


def handle_leave_challenge(data):
    room = _room_from(data)
    if not room:
        emit('error', {'message': 'date must be YYYY-MM-DD'})
        return
    leave_room(room)
    emit('left', {'room': room})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('join_challenge', handle_join_challenge, namespace='/ws')
    socketio.on_event('leave_challenge', handle_leave_challenge, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')

    if testing:
        socketio.on_event('connect', handle_connect, namespace='/')
        socketio.on_event('join_challenge', handle_join_challenge, namespace='/')
        socketio.on_event('leave_challenge', handle_leave_challenge, namespace='/')
        socketio.on_event('ping', handle_ping, namespace='/')
