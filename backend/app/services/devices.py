import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app.core.devices import generate_device_hash, parse_user_agent
from app.db.models.user_device import UserDevice

logger = logging.getLogger(__name__)


def find_device(db: Session, user_id: int, device_hash: str) -> UserDevice | None:
    return (
        db.query(UserDevice)
        .filter(UserDevice.user_id == user_id, UserDevice.device_hash == device_hash)
        .first()
    )


def is_known_device(db: Session, user_id: int, user_agent: str | None, ip: str | None) -> bool:
    return find_device(db, user_id, generate_device_hash(user_agent, ip)) is not None


def register_device(
    db: Session,
    user_id: int,
    user_agent: str | None,
    ip: str | None,
    now: datetime,
) -> tuple[UserDevice, bool]:
    """Create the device on first sighting, otherwise bump last_used_at. Returns (device, is_new)."""
    device_hash = generate_device_hash(user_agent, ip)
    device = find_device(db, user_id, device_hash)
    if device:
        device.last_used_at = now
        device.ip = ip
        db.flush()
        return device, False

    info = parse_user_agent(user_agent)
    device = UserDevice(
        user_id=user_id,
        device_hash=device_hash,
        device_name=info.name,
        device_type=info.device_type,
        browser=info.browser,
        os=info.os,
        ip=ip,
        created_at=now,
        last_used_at=now,
    )
    db.add(device)
    db.flush()
    logger.info("device_registered user_id=%s device=%s", user_id, info.name)
    return device, True


def list_devices(db: Session, user_id: int) -> list[UserDevice]:
    return (
        db.query(UserDevice)
        .filter(UserDevice.user_id == user_id)
        .order_by(UserDevice.last_used_at.desc())
        .all()
    )


def remove_device(db: Session, user_id: int, device_id: int) -> bool:
    removed = (
        db.query(UserDevice)
        .filter(UserDevice.id == device_id, UserDevice.user_id == user_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return removed > 0


def serialize_device(device: UserDevice) -> dict:
    return {
        "id": device.id,
        "device_name": device.device_name,
        "device_type": device.device_type,
        "browser": device.browser,
        "os": device.os,
        "ip": device.ip,
        "created_at": device.created_at.isoformat(),
        "last_used_at": device.last_used_at.isoformat(),
    }
