"""
Authentication helpers.

 - hash_password / verify_password: werkzeug salted hashes
 - create_access_token / decode_access_token: HS256 JWT with user id in `sub`
 - token_required: view decorator passing the authenticated User as first argument
"""
from datetime import datetime, timedelta, timezone
from functools import wraps

from flask import current_app, request
from jose import jwt, JWTError
from werkzeug.security import generate_password_hash, check_password_hash

from models import db, User
from errors import AuthError, ValidationError

ALGORITHM = "HS256"


def hash_password(password):
    return generate_password_hash(password)


def verify_password(password, password_hash):
    return check_password_hash(password_hash, password)


def create_access_token(user_id, expires_delta=None):
    if expires_delta is None:
        expires_delta = timedelta(minutes=current_app.config['TOKEN_EXPIRE_MINUTES'])
    expire = datetime.now(timezone.utc) + expires_delta
    payload = {"sub": str(user_id), "exp": expire}
    return jwt.encode(payload, current_app.config['SECRET_KEY'], algorithm=ALGORITHM)


def decode_access_token(token):
    """Return the user id in the token; AuthError if invalid or expired"""
    try:
        payload = jwt.decode(token, current_app.config['SECRET_KEY'], algorithms=[ALGORITHM])
        return int(payload["sub"])
    except (JWTError, KeyError, ValueError) as e:
        raise AuthError('Invalid or expired token, please log in again') from e


def register_user(username, password):
    if User.query.filter_by(username=username).first():
        raise ValidationError('Username already exists')
    user = User(username=username, password_hash=hash_password(password))
    db.session.add(user)
    db.session.commit()
    return user


def authenticate_user(username, password):
    user = User.query.filter_by(username=username).first()
    if user is None or not verify_password(password, user.password_hash):
        raise AuthError('Incorrect username or password')
    return user


def token_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        header = request.headers.get('Authorization', '')
        scheme, _, token = header.partition(' ')
        if scheme.lower() != 'bearer' or not token.strip():
            raise AuthError('Missing bearer token')
        user = db.session.get(User, decode_access_token(token.strip()))
        if user is None:
            raise AuthError('User no longer exists')
        return f(user, *args, **kwargs)
    return wrapper
