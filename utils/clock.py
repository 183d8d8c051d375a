from datetime import datetime, timezone


# DB에는 naive UTC로 저장
def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
