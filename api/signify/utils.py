
import base64, hashlib, json
from itsdangerous import URLSafeTimedSerializer
from .config import SECRET_KEY


def data_url_to_bytes(data_url: str) -> bytes:
    # accepts "data:image/png;base64,....." or bare base64
    if "," in data_url:
        data_url = data_url.split(",", 1)[1]
    return base64.b64decode(data_url)


def bytes_to_data_url(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode()}"


def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(SECRET_KEY, salt="signify-auth")


def make_token(payload: dict) -> str:
    return _serializer().dumps(payload)


def read_token(token: str, max_age: int) -> dict:
    return _serializer().loads(token, max_age=max_age)
