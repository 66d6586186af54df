from typing import Literal, TypedDict


# other platforms may be registered by clients; only fcm tokens are pushed to
PushPlatform = Literal["fcm", "apns", "webpush"]


class PushTarget(TypedDict, total=False):
    """Token record owned by the device registry. Read-only here."""

    user_id: str
    platform: PushPlatform
    token: str
