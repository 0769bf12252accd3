"""Single-flight lock around one pipeline invocation.

Redis when REDIS_URL is set (SET NX EX + token-checked release), otherwise a
row in pipeline_locks claimed with a conditional UPDATE. Both expire, so a
crashed holder cannot wedge the scheduler.
"""

import os
import secrets
from datetime import datetime, timedelta

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from extensions import db, get_redis
from models_predictions import PipelineLock

PIPELINE_LOCK_NAME = os.getenv("PIPELINE_LOCK_NAME", "prediction-pipeline")
PIPELINE_LOCK_TTL_SECONDS = int(os.getenv("PIPELINE_LOCK_TTL_SECONDS", "900"))

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_REFRESH_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
end
return 0
"""


class RedisPipelineLock:
    def __init__(self, client, name=PIPELINE_LOCK_NAME, ttl=PIPELINE_LOCK_TTL_SECONDS):
        self.client = client
        self.key = f"lock:{name}"
        self.ttl = ttl
        self.token = None

    def acquire(self) -> bool:
        token = secrets.token_hex(16)
        if self.client.set(self.key, token, nx=True, ex=self.ttl):
            self.token = token
            return True
        return False

    def refresh(self) -> bool:
        if self.token is None:
            return False
        return bool(self.client.eval(_REFRESH_SCRIPT, 1, self.key, self.token, self.ttl))

    def release(self) -> None:
        if self.token is None:
            return
        self.client.eval(_RELEASE_SCRIPT, 1, self.key, self.token)
        self.token = None


class DatabasePipelineLock:
    def __init__(self, name=PIPELINE_LOCK_NAME, ttl=PIPELINE_LOCK_TTL_SECONDS):
        self.name = name
        self.ttl = ttl
        self.token = None

    def _ensure_row(self):
        if db.session.get(PipelineLock, self.name) is not None:
            return
        try:
            with db.session.begin_nested():
                db.session.add(PipelineLock(name=self.name))
        except IntegrityError:
            pass  # another process created it first
        db.session.commit()

    def acquire(self, now=None) -> bool:
        now = now or datetime.utcnow()
        self._ensure_row()
        token = secrets.token_hex(16)
        claimed = (
            PipelineLock.query.filter(
                PipelineLock.name == self.name,
                or_(PipelineLock.holder.is_(None), PipelineLock.expires_at < now),
            )
            .update(
                {
                    PipelineLock.holder: token,
                    PipelineLock.acquired_at: now,
                    PipelineLock.expires_at: now + timedelta(seconds=self.ttl),
                },
                synchronize_session=False,
            )
        )
        db.session.commit()
        if claimed == 1:
            self.token = token
            return True
        return False

    def refresh(self, now=None) -> bool:
        if self.token is None:
            return False
        now = now or datetime.utcnow()
        updated = (
            PipelineLock.query.filter_by(name=self.name, holder=self.token)
            .update({PipelineLock.expires_at: now + timedelta(seconds=self.ttl)}, synchronize_session=False)
        )
        db.session.commit()
        return updated == 1

    def release(self) -> None:
        if self.token is None:
            return
        PipelineLock.query.filter_by(name=self.name, holder=self.token).update(
            {PipelineLock.holder: None, PipelineLock.expires_at: None},
            synchronize_session=False,
        )
        db.session.commit()
        self.token = None


def get_pipeline_lock():
    client = get_redis()
    if client is not None:
        return RedisPipelineLock(client)
    return DatabasePipelineLock()
