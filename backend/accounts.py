import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Mapping, Optional, Union

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "standard"


class ProfileError(ValueError):
    """The identity provider returned a profile without an id or email."""


class AccountLinkConflict(Exception):
    """The email already belongs to an account linked to another Google id."""


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def _first_value(entries) -> str:
    if not entries:
        return ""
    first = entries[0]
    if isinstance(first, Mapping):
        return str(first.get("value") or "").strip()
    return str(first or "").strip()


@dataclass(frozen=True)
class GoogleProfile:
    id: str
    display_name: str
    email: str
    avatar_url: str = ""

    @classmethod
    def from_userinfo(cls, info: Mapping) -> "GoogleProfile":
        """Build a profile from OIDC userinfo claims or a passport-style profile.

        OIDC claims use ``sub``/``name``/``email``/``picture``; passport-style
        profiles carry ``id``/``displayName``/``emails[0].value``/``photos[0].value``.
        """
        external_id = str(info.get("sub") or info.get("id") or "").strip()
        email = normalize_email(info.get("email") or _first_value(info.get("emails")))
        display_name = str(info.get("name") or info.get("displayName") or "").strip()
        avatar_url = str(
            info.get("picture") or _first_value(info.get("photos")) or ""
        ).strip()

        if not external_id:
            raise ProfileError("The Google profile did not include an account id.")
        if not email:
            raise ProfileError("The Google profile did not include an email address.")

        return cls(
            id=external_id,
            display_name=display_name or email.split("@")[0],
            email=email,
            avatar_url=avatar_url,
        )


@dataclass(frozen=True)
class Resolved:
    user: Dict
    outcome: str


@dataclass(frozen=True)
class Failed:
    error: Exception


Resolution = Union[Resolved, Failed]


class UserRepository:
    """Persistence for the ``users`` collection on an injected connection."""

    def __init__(self, connection):
        self.connection = connection

    @property
    def collection(self):
        return self.connection.db.users

    def ensure_indexes(self) -> None:
        try:
            self.collection.create_index([("email", ASCENDING)], unique=True)
            self.collection.create_index(
                [("google_id", ASCENDING)], unique=True, sparse=True
            )
        except PyMongoError as exc:
            logger.warning("Unable to ensure indexes for users: %s", exc)

    def find_by_email(self, email: str):
        return self.collection.find_one({"email": normalize_email(email)})

    def find_by_google_id(self, google_id: str):
        return self.collection.find_one({"google_id": google_id})

    def link_google_id(self, user_id, google_id: str):
        return self.collection.find_one_and_update(
            {"_id": user_id},
            {
                "$set": {
                    "google_id": google_id,
                    "email_verified": True,
                    "updated_at": datetime.utcnow(),
                }
            },
            return_document=ReturnDocument.AFTER,
        )

    def insert(self, document: Dict) -> Dict:
        result = self.collection.insert_one(document)
        document["_id"] = result.inserted_id
        return document

    def create_from_google(self, profile: GoogleProfile) -> Dict:
        now = datetime.utcnow()
        return self.insert(
            {
                "google_id": profile.id,
                "email": profile.email,
                "name": profile.display_name,
                "avatar": profile.avatar_url or "",
                "email_verified": True,
                # OAuth-only accounts have no password.
                "password": None,
                "auth_provider": "google",
                "role": DEFAULT_ROLE,
                "created_at": now,
                "updated_at": now,
            }
        )

    def create_local(self, email: str, name: str, password_hash: bytes) -> Dict:
        now = datetime.utcnow()
        return self.insert(
            {
                "email": normalize_email(email),
                "name": name,
                "avatar": "",
                "email_verified": False,
                "password": password_hash,
                "auth_provider": "local",
                "role": DEFAULT_ROLE,
                "created_at": now,
                "updated_at": now,
            }
        )

    def touch_last_login(self, user_id) -> None:
        self.collection.update_one(
            {"_id": user_id}, {"$set": {"last_login_at": datetime.utcnow()}}
        )


class AccountResolver:
    """Finds, links or creates the local account for a Google profile.

    The Google id lookup always runs before the email lookup, so an account
    that is already linked is returned untouched. Every call writes at most
    one record.
    """

    def __init__(self, users: UserRepository, max_attempts: int = 2):
        self.users = users
        self.max_attempts = max_attempts

    def resolve(self, profile: GoogleProfile) -> Resolution:
        attempt = 0
        while True:
            attempt += 1
            try:
                user, outcome = self._resolve_once(profile)
            except DuplicateKeyError as exc:
                # Another callback created the same account between our lookup and insert.
                if attempt < self.max_attempts:
                    logger.info(
                        "Concurrent sign-in detected for %s; resolving again.",
                        profile.email,
                    )
                    continue
                logger.error("Unable to resolve Google account %s: %s", profile.email, exc)
                return Failed(exc)
            except (AccountLinkConflict, PyMongoError) as exc:
                logger.error("Unable to resolve Google account %s: %s", profile.email, exc)
                return Failed(exc)

            logger.info("Google sign-in for %s resolved (%s).", profile.email, outcome)
            return Resolved(user=user, outcome=outcome)

    def _resolve_once(self, profile: GoogleProfile):
        user = self.users.find_by_google_id(profile.id)
        if user:
            return user, "existing"

        user = self.users.find_by_email(profile.email)
        if user:
            # A linked Google id is never reassigned to another Google account.
            linked_id = user.get("google_id")
            if linked_id and linked_id != profile.id:
                raise AccountLinkConflict(
                    f"{profile.email} is already linked to a different Google account."
                )
            updated = self.users.link_google_id(user["_id"], profile.id)
            if updated is None:
                raise PyMongoError(f"Account {user['_id']} disappeared while linking.")
            return updated, "linked"

        return self.users.create_from_google(profile), "created"


def serialize_user_profile(user_document) -> Dict[str, object]:
    return {
        "id": str(user_document.get("_id", "")),
        "email": user_document.get("email", ""),
        "name": user_document.get("name", ""),
        "avatar": user_document.get("avatar", "") or "",
        "role": user_document.get("role", DEFAULT_ROLE),
        "email_verified": bool(user_document.get("email_verified")),
        "auth_provider": user_document.get("auth_provider", "local"),
        "google_linked": bool(user_document.get("google_id")),
    }
