"""User directory service."""
from typing import List

from labtrail.access.identity import Identity
from labtrail.access.ownership import get_rule, require_capability
from labtrail.errors import Conflict, NotFound
from labtrail.models.domain import User
from labtrail.models.enums import ResourceType, Role
from labtrail.services.base import RecordService

USER_FIELDS = ("email", "first_name", "last_name", "role", "is_active")


class UserService(RecordService):
    rule = get_rule(ResourceType.USER)

    def _email_taken(self, email: str) -> bool:
        return self.db.query(User).filter(User.email == email).first() is not None

    def create(self, data: dict, identity: Identity) -> User:
        require_capability(identity, (Role.CLINICIAN,), "Only clinicians can create users")
        if self._email_taken(data["email"]):
            raise Conflict(f"User with email '{data['email']}' already exists")

        user = User(**{key: data[key] for key in USER_FIELDS if data.get(key) is not None})
        self.db.add(user)
        self.commit(f"User with email '{data['email']}' already exists")
        self.db.refresh(user)
        return user

    def list(self, identity: Identity) -> List[User]:
        return (
            self.db.query(User)
            .filter(self.rule.scoped_list(identity))
            .order_by(User.created_at.desc())
            .all()
        )

    def get(self, user_id: str, identity: Identity) -> User:
        user = self.db.query(User).filter(User.id == user_id).first()
        return self.rule.ensure(identity, user, user_id)

    def profile(self, identity: Identity) -> User:
        user = self.db.query(User).filter(User.id == identity.id).first()
        if user is None:
            raise NotFound.for_resource("User", identity.id)
        return user

    def update(self, user_id: str, changes: dict, identity: Identity) -> User:
        user = self.get(user_id, identity)
        require_capability(identity, (Role.CLINICIAN,), "Only clinicians can update users")

        email = changes.get("email")
        if email is not None and email != user.email and self._email_taken(email):
            raise Conflict(f"User with email '{email}' already exists")

        for key in USER_FIELDS:
            if changes.get(key) is not None:
                setattr(user, key, changes[key])
        self.commit(f"User with email '{user.email}' already exists")
        self.db.refresh(user)
        return user

    def delete(self, user_id: str, identity: Identity) -> None:
        user = self.get(user_id, identity)
        require_capability(identity, (Role.CLINICIAN,), "Only clinicians can delete users")
        self.db.delete(user)
        self.commit(f"User {user_id} is still referenced by lab orders or results")
