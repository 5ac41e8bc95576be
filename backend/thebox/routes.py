from flask import Blueprint, request, jsonify, current_app
from flask_login import current_user, login_user, logout_user, login_required
from thebox import db
from thebox.models import User
from thebox.services.daily.generator import today_utc
from thebox.services.daily.streaks import update_login_streak

main = Blueprint('main', __name__)

@main.route('/')
def index():
    return jsonify({'message': 'Welcome to The Box daily challenge server!'})

@main.route('/register', methods=['POST'])
def register():
    data = request.get_json(silent=True)
    if not data or 'username' not in data or 'password' not in data:
        return jsonify({'error': 'Missing username or password'}), 400

    if User.query.filter_by(username=data['username']).first():
        return jsonify({'error': 'Username already exists'}), 400

    user = User(username=data['username'])
    user.set_password(data['password'])
    db.session.add(user)
    db.session.commit()

    return jsonify({'message': 'User created successfully', 'user': user.to_dict()}), 201

@main.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    user = User.query.filter_by(username=data.get('username')).first()
    if not (user and user.check_password(data.get('password'))):
        return jsonify({'error': 'Invalid username or password'}), 401

    login_user(user, remember=True)
    streak = update_login_streak(user.id, today_utc())
    current_app.logger.info(f"[login] user={user.id} login_streak={streak.current}")
    return jsonify({
        'message': 'Logged in successfully.',
        'user': user.to_dict(),
        'login_streak': streak.current,
        'newly_earned_achievements': streak.newly_earned,
    })

@main.route('/logout')
@login_required
def logout():
    logout_user()
    return jsonify({'message': 'Logged out successfully.'})

@main.route('/me')
@login_required
def me():
    return jsonify({'user': current_user.to_dict()})
