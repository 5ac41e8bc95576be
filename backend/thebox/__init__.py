from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from thebox.routes import main
    flask_app.register_blueprint(main)

    from thebox.api.daily import daily
    flask_app.register_blueprint(daily, url_prefix='/api/daily')

    from thebox.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    from thebox.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'UNAUTHORIZED', 'message': 'Login required'}), 401

    _register_cli(flask_app)

    from thebox.services.daily.scheduler import start_rotation_schedule
    start_rotation_schedule(flask_app)

    return flask_app


def _register_cli(flask_app):
    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from thebox.models import User
        from thebox.services.daily.achievements import seed_achievements
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            users = ['testuser1', 'testuser2', 'testuser3']
            for u in users:
                user = User(username=u)
                user.set_password('password')
                db.session.add(user)
            db.session.commit()
            seed_achievements()
            print('Database has been reset and seeded!')

    @click.command('seed-achievements')
    def seed_achievements_command():
        """Inserts the default achievement catalog (existing keys are kept)."""
        from thebox.services.daily.achievements import seed_achievements
        with flask_app.app_context():
            added = seed_achievements()
            print(f'Added {added} achievement(s).')

    @click.command('create-challenge')
    def create_challenge_command():
        """Creates today's daily challenge if it does not exist yet."""
        from thebox.services.daily.generator import create_daily_challenge
        with flask_app.app_context():
            result = create_daily_challenge()
            print(result.message)

    @click.command('rotate')
    def rotate_command():
        """Runs the midnight rotation now: new challenge + force-close stale sessions."""
        from thebox.services.daily.rotation import run_rotation
        with flask_app.app_context():
            report = run_rotation()
            print(report.message)

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(seed_achievements_command)
    flask_app.cli.add_command(create_challenge_command)
    flask_app.cli.add_command(rotate_command)
