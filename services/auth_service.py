# services/auth_service.py
from flask_login import UserMixin

MANAGER_ROLES = ("supervisor", "manager", "admin")


class User(UserMixin):
    """Logged-in user backed by a store profile. Authentication itself happens upstream."""

    def __init__(self, profile):
        self.id = str(profile.id)  # Flask-Login requires id to be a string
        self.username = profile.display_name
        self.email = profile.email
        self.role = profile.role
        self.warehouse_id = profile.warehouse_id
        self._active = profile.active

    @property
    def is_active(self):
        return self._active

    def is_admin(self):
        return self.role == "admin"

    def has_role(self, *roles):
        return self.role in roles

    def can_manage(self):
        return self.role in MANAGER_ROLES


def load_user_from_store(store, user_id):
    profile = store.get_profile(user_id)
    return User(profile) if profile else None
