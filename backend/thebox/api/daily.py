from datetime import date

from flask import Blueprint, jsonify, request, current_app
from flask_login import current_user, login_required

from thebox.services.daily.achievements import achievement_progress
from thebox.services.daily.errors import DailyError
from thebox.services.daily.generator import get_today_challenge
from thebox.services.daily.leaderboard import daily_leaderboard
from thebox.services.daily import sessions as svc
from thebox.models import GameSession


daily = Blueprint('daily', __name__)


class BadRequest(DailyError):
    code = 'BAD_REQUEST'
    status_code = 400


@daily.errorhandler(DailyError)
def handle_daily_error(err: DailyError):
    current_app.logger.info(f"[api-error] path={request.path} code={err.code} message={err.message}")
    return jsonify(err.to_dict()), err.status_code


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _int_field(data: dict, name: str, required: bool = True):
    value = data.get(name)
    if value is None:
        if required:
            raise BadRequest(f"{name} is required")
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BadRequest(f"{name} must be an integer")


def _parse_date(value) -> date:
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise BadRequest('date must be YYYY-MM-DD')


@daily.route('/today', methods=['GET'])
@login_required
def today():
    challenge = get_today_challenge()
    payload = challenge.to_dict()
    payload['tiers'] = [
        {'tier_number': t.tier_number, 'name': t.name, 'time_limit_seconds': t.time_limit_seconds,
         'screenshots': len(t.assignments)}
        for t in challenge.tiers
    ]
    session = GameSession.query.filter_by(user_id=current_user.id, daily_challenge_id=challenge.id).first()
    payload['session_id'] = session.id if session else None
    payload['is_completed'] = bool(session and session.is_completed)
    return jsonify(payload)


@daily.route('/start', methods=['POST'])
@login_required
def start():
    day = _body().get('date')
    session = svc.start_or_resume(current_user.id, challenge_date=_parse_date(day) if day else None)
    return jsonify(svc.session_state(session))


@daily.route('/missed', methods=['GET'])
@login_required
def missed():
    return jsonify({'missed_challenges': svc.missed_challenges(current_user.id)})


@daily.route('/sessions/<int:session_id>', methods=['GET'])
@login_required
def get_state(session_id: int):
    session = svc.get_session(session_id, user_id=current_user.id)
    return jsonify(svc.session_state(session))


@daily.route('/sessions/<int:session_id>/guess', methods=['POST'])
@login_required
def guess(session_id: int):
    data = _body()
    position = _int_field(data, 'position')
    elapsed_ms = _int_field(data, 'elapsed_ms')
    game_id = _int_field(data, 'game_id', required=False)
    text = data.get('text')
    if game_id is None and not (text and str(text).strip()):
        raise BadRequest('game_id or text is required')
    outcome = svc.submit_guess(
        session_id,
        position,
        game_id,
        str(text) if text is not None else None,
        elapsed_ms,
        power_up_used=data.get('power_up_used'),
        user_id=current_user.id,
    )
    return jsonify(outcome.to_dict())


@daily.route('/sessions/<int:session_id>/skip', methods=['POST'])
@login_required
def skip(session_id: int):
    svc.skip(session_id, _int_field(_body(), 'position'), user_id=current_user.id)
    return jsonify(svc.session_state(svc.get_session(session_id)))


@daily.route('/sessions/<int:session_id>/navigate', methods=['POST'])
@login_required
def navigate(session_id: int):
    svc.navigate_to(session_id, _int_field(_body(), 'position'), user_id=current_user.id)
    return jsonify(svc.session_state(svc.get_session(session_id)))


@daily.route('/sessions/<int:session_id>/hint', methods=['POST'])
@login_required
def hint(session_id: int):
    data = _body()
    hint_type = data.get('hint_type')
    if not hint_type:
        raise BadRequest('hint_type is required')
    position = _int_field(data, 'position')
    value = svc.use_hint(session_id, position, hint_type, user_id=current_user.id)
    return jsonify({'position': position, 'hint_type': hint_type, 'value': value})


@daily.route('/sessions/<int:session_id>/power-ups', methods=['POST'])
@login_required
def power_up(session_id: int):
    data = _body()
    power_up_type = data.get('type')
    if not power_up_type:
        raise BadRequest('type is required')
    awarded = svc.earn_power_up(session_id, power_up_type, _int_field(data, 'round'), user_id=current_user.id)
    return jsonify(awarded.to_dict()), 201


@daily.route('/sessions/<int:session_id>/end', methods=['POST'])
@login_required
def end(session_id: int):
    summary = svc.end_session(session_id, reason='voluntary', user_id=current_user.id)
    return jsonify(summary.to_dict())


@daily.route('/leaderboard/<string:day>', methods=['GET'])
@login_required
def leaderboard(day: str):
    challenge_date = _parse_date(day)
    limit = _int_field(request.args, 'limit', required=False) or 100
    return jsonify({'date': challenge_date.isoformat(), 'entries': daily_leaderboard(challenge_date, limit)})


@daily.route('/achievements', methods=['GET'])
@login_required
def achievements():
    return jsonify({'achievements': achievement_progress(current_user.id)})
