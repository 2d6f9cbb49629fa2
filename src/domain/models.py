import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from src.domain.exceptions import InvalidArgumentError, InvalidOperationError

logger = logging.getLogger(__name__)

# Source of "now" for audit timestamps. Injected so tests can control time.
Clock = Callable[[], datetime]

# RFC 3986 unreserved, reserved and percent-encoded characters.
_URI_CHARACTERS = re.compile(r"^(?:[A-Za-z0-9\-._~:/?#\[\]@!$&'()*+,;=]|%[0-9A-Fa-f]{2})*$")
_URI_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+\-.]*$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: Optional[str], field_name: str) -> str:
    """Trims a required string, rejecting None, non-strings and blank values."""
    if value is None:
        raise InvalidArgumentError(f"{field_name} is required.")
    if not isinstance(value, str):
        raise InvalidArgumentError(f"{field_name} must be a string.")
    value = value.strip()
    if not value:
        raise InvalidArgumentError(f"{field_name} cannot be empty or whitespace.")
    return value


def _require_present(value: Optional[str], field_name: str) -> str:
    """Rejects None, non-strings and blank values; the value itself is kept as given."""
    _require_text(value, field_name)
    return value


def _optional_text(value: Optional[str]) -> Optional[str]:
    """Trims an optional string; blank input normalizes to None."""
    if value is None:
        return None
    value = value.strip()
    return value or None


def normalize_url(url: Optional[str]) -> Optional[str]:
    """
    Validates a URL as a well-formed absolute or relative URI reference.

    Args:
        url (Optional[str]): The raw URL. None or whitespace means "no URL".

    Returns:
        Optional[str]: The trimmed URL, or None when no URL was given.

    Raises:
        InvalidArgumentError: If the value is not a well-formed URI.
    """
    url = _optional_text(url)
    if url is None:
        return None

    if not _URI_CHARACTERS.match(url):
        raise InvalidArgumentError(f"Url '{url}' is not a well-formed URI.")

    # A colon before the first '/', '?' or '#' can only terminate a scheme.
    head = re.split(r"[/?#]", url, maxsplit=1)[0]
    if ":" in head and not _URI_SCHEME.match(head.split(":", 1)[0]):
        raise InvalidArgumentError(f"Url '{url}' has an invalid scheme.")

    try:
        parts = urlsplit(url)
        parts.port  # raises on a non-numeric or out-of-range port
    except ValueError as e:
        raise InvalidArgumentError(f"Url '{url}' is not a well-formed URI: {e}") from e

    if parts.scheme and url[len(parts.scheme) + 1:].startswith("//") and not parts.hostname:
        raise InvalidArgumentError(f"Url '{url}' is missing a host.")

    return url


class RepositoryGroup(BaseModel):
    """
    A named node in the repository group tree.

    parent_group_id is the durable link to the parent. parent_group is a resolved
    reference filled in by the loader; it is dropped whenever parent_group_id changes.
    Only direct self-parenting is rejected here, indirect cycles are checked on load.
    """
    id: str = Field(..., description="Stable identifier of the group")
    name: str = Field(..., description="Trimmed display name of the group")
    parent_group_id: Optional[str] = Field(
        default=None,
        description="Identifier of the parent group, None for a root group"
    )
    parent_group: Optional["RepositoryGroup"] = Field(
        default=None,
        exclude=True,
        repr=False,
        description="Resolved parent group, rehydrated by the loader"
    )
    url: Optional[str] = Field(default=None, description="Absolute or relative URI of the group")

    @classmethod
    def create(
        cls,
        id: str,
        name: str,
        parent_group_id: Optional[str] = None,
        url: Optional[str] = None,
    ) -> "RepositoryGroup":
        id = _require_text(id, "Id")
        name = _require_text(name, "Name")
        parent_group_id = _optional_text(parent_group_id)
        if parent_group_id == id:
            raise InvalidOperationError(f"Group '{id}' cannot be its own parent.")

        return cls(id=id, name=name, parent_group_id=parent_group_id, url=normalize_url(url))

    @property
    def is_root(self) -> bool:
        return self.parent_group_id is None

    def rename(self, new_name: str) -> None:
        new_name = _require_text(new_name, "Name")
        if new_name == self.name:
            return
        self.name = new_name

    def set_parent(self, parent_group_id: str) -> None:
        parent_group_id = _require_text(parent_group_id, "Parent group id")
        if parent_group_id == self.id:
            raise InvalidOperationError(f"Group '{self.id}' cannot be its own parent.")

        logger.debug(f"Group '{self.id}' moved under '{parent_group_id}'.")
        self.parent_group_id = parent_group_id
        self.parent_group = None

    def clear_parent(self) -> None:
        self.parent_group_id = None
        self.parent_group = None

    def update_url(self, url: Optional[str]) -> None:
        self.url = normalize_url(url)

    def attach_parent(self, parent: "RepositoryGroup") -> None:
        """Sets the resolved parent reference. Used by the loader after reading groups."""
        if parent is None or parent.id != self.parent_group_id:
            raise InvalidOperationError(
                f"Group '{self.id}' has parent id '{self.parent_group_id}', "
                f"cannot attach '{getattr(parent, 'id', None)}'."
            )
        self.parent_group = parent

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RepositoryGroup):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __str__(self) -> str:
        return f"{self.id}: {self.name}"


class Repository(BaseModel):
    """
    Immutable repository belonging to exactly one RepositoryGroup.
    group_id is copied from the group at creation and never diverges from it.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable identifier of the repository")
    name: str = Field(..., description="Name of the repository")
    group_id: str = Field(..., description="Identifier of the owning group")
    group: RepositoryGroup = Field(..., repr=False, description="Owning repository group")
    url: str = Field(..., description="URL of the repository")

    @classmethod
    def create(cls, id: str, name: str, group: RepositoryGroup, url: str) -> "Repository":
        id = _require_text(id, "Id")
        name = _require_text(name, "Name")
        if group is None:
            raise InvalidArgumentError("Group is required.")
        url = _require_text(url, "Url")

        return cls(id=id, name=name, group_id=group.id, group=group, url=url)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Repository):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)


class GitLabCredential(BaseModel):
    """
    Encrypted GitLab access token linked to an ApplicationUser.

    Instances are created and detached only through ApplicationUser. While owned,
    application_user and application_user_id are both set; once removed both are None.
    """
    id: Optional[int] = Field(default=None, description="Identifier assigned by persistence")
    name: str = Field(..., description="User-chosen label, unique per user ignoring case")
    encrypted_access_token: str = Field(..., repr=False, description="Opaque, already-encrypted token")
    gitlab_username: Optional[str] = Field(default=None, description="GitLab account the token belongs to")
    application_user_id: Optional[str] = Field(default=None, description="Identifier of the owning user")
    application_user: Optional["ApplicationUser"] = Field(
        default=None,
        exclude=True,
        repr=False,
        description="Back-reference to the owning user"
    )

    @property
    def is_attached(self) -> bool:
        return self.application_user is not None

    def __eq__(self, other: object) -> bool:
        # Ids are only known after persistence, so credentials compare by instance.
        return self is other

    def __hash__(self) -> int:
        return id(self)


class ApplicationUser(BaseModel):
    """
    User profile and aggregate root for the user's GitLab credentials.

    Identity fields (user_name, email, security_stamp) belong to the identity
    subsystem and are stored as given, as are full_name and display_name; they are
    only checked for being non-blank. The credential list is private: callers get
    a tuple snapshot from gitlab_credentials and mutate only through the methods below.
    Copies get their own list, with copied credentials bound to the copy.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Identity subsystem user id")
    user_name: str = Field(..., description="Login name")
    email: str = Field(..., description="Email address")
    security_stamp: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        repr=False,
        description="Opaque stability token consumed by the identity subsystem"
    )

    full_name: str = Field(..., description="Full name of the user")
    display_name: str = Field(..., description="Name shown in the UI, defaults to full_name")
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: bool = True

    created_at: datetime
    updated_at: datetime
    last_seen_at: Optional[datetime] = None

    _gitlab_credentials: List[GitLabCredential] = PrivateAttr(default_factory=list)
    # None means utc_now. A plain function default would be bound as a method by pydantic.
    _clock: Optional[Clock] = PrivateAttr(default=None)

    @classmethod
    def create(
        cls,
        user_name: str,
        email: str,
        full_name: str,
        clock: Optional[Clock] = None,
    ) -> "ApplicationUser":
        user_name = _require_present(user_name, "UserName")
        email = _require_present(email, "Email")
        full_name = _require_present(full_name, "FullName")

        now = (clock or utc_now)()
        user = cls(
            user_name=user_name,
            email=email,
            full_name=full_name,
            display_name=full_name,
            created_at=now,
            updated_at=now,
        )
        user._clock = clock
        return user

    @classmethod
    def restore(
        cls,
        credentials: Iterable[Dict[str, Any]] = (),
        clock: Optional[Clock] = None,
        **fields: Any,
    ) -> "ApplicationUser":
        """
        Rebuilds a stored user together with its stored credentials.

        Args:
            credentials (Iterable[Dict[str, Any]]): Credential rows with id, name,
                encrypted_access_token and gitlab_username.
            clock (Optional[Clock]): Source of "now" for later mutations.
            **fields: Stored profile columns.

        Returns:
            ApplicationUser: The aggregate, timestamps untouched.
        """
        user = cls(**fields)
        user._clock = clock
        for row in credentials:
            if user.get_gitlab_credential_by_name(row['name']) is not None:
                raise InvalidOperationError(
                    f"Stored GitLab credential name '{row['name']}' is duplicated for user '{user.id}'."
                )
            user._gitlab_credentials.append(GitLabCredential(
                id=row['id'],
                name=row['name'],
                encrypted_access_token=row['encrypted_access_token'],
                gitlab_username=row.get('gitlab_username'),
                application_user_id=user.id,
                application_user=user,
            ))
        return user

    @property
    def gitlab_credentials(self) -> Tuple[GitLabCredential, ...]:
        return tuple(self._gitlab_credentials)

    def _now(self) -> datetime:
        return (self._clock or utc_now)()

    def _touch(self) -> None:
        self.updated_at = self._now()

    def _adopt_credentials(self, credentials: Iterable[GitLabCredential]) -> None:
        self._gitlab_credentials = [
            credential.model_copy(update={"application_user": self, "application_user_id": self.id})
            for credential in credentials
        ]

    def __copy__(self) -> "ApplicationUser":
        copied = super().__copy__()
        copied._adopt_credentials(self._gitlab_credentials)
        return copied

    def __deepcopy__(self, memo: Optional[Dict[int, Any]] = None) -> "ApplicationUser":
        # Field values are immutable; only the credential list needs fresh instances.
        return self.__copy__()

    def model_copy(self, *, update: Optional[Dict[str, Any]] = None, deep: bool = False) -> "ApplicationUser":
        copied = super().model_copy(update=update, deep=deep)
        for credential in copied._gitlab_credentials:
            credential.application_user_id = copied.id
        return copied

    # Profile

    def update_profile(
        self,
        full_name: str,
        display_name: Optional[str] = None,
        bio: Optional[str] = None,
    ) -> None:
        full_name = _require_present(full_name, "FullName")

        self.full_name = full_name
        self.display_name = display_name if _optional_text(display_name) else full_name
        self.bio = bio
        self._touch()

    def set_avatar(self, avatar_url: Optional[str]) -> None:
        self.avatar_url = _optional_text(avatar_url)
        self._touch()

    def clear_avatar(self) -> None:
        self.avatar_url = None
        self._touch()

    def activate(self) -> None:
        if not self.is_active:
            self.is_active = True
            self._touch()

    def deactivate(self) -> None:
        if self.is_active:
            self.is_active = False
            self._touch()

    def touch_last_seen(self) -> None:
        # Activity signal only; updated_at tracks profile changes.
        self.last_seen_at = self._now()

    # GitLab credentials

    def add_gitlab_credential(
        self,
        name: str,
        encrypted_access_token: str,
        gitlab_username: Optional[str] = None,
    ) -> GitLabCredential:
        name = _require_text(name, "Credential name")
        encrypted_access_token = _require_text(encrypted_access_token, "Encrypted access token")

        if self.get_gitlab_credential_by_name(name) is not None:
            raise InvalidOperationError(
                f"A GitLab credential with the name '{name}' already exists for this user."
            )

        credential = GitLabCredential(
            name=name,
            encrypted_access_token=encrypted_access_token,
            gitlab_username=_optional_text(gitlab_username),
            application_user_id=self.id,
            application_user=self,
        )
        self._gitlab_credentials.append(credential)
        self._touch()
        logger.debug(f"Linked GitLab credential '{name}' to user '{self.id}'.")
        return credential

    def remove_gitlab_credential(self, credential_id: int) -> bool:
        credential = self.get_gitlab_credential_by_id(credential_id)
        if credential is None:
            return False
        self._detach_credential(credential)
        return True

    def remove_gitlab_credential_by_name(self, name: str) -> bool:
        credential = self.get_gitlab_credential_by_name(name)
        if credential is None:
            return False
        self._detach_credential(credential)
        return True

    def get_gitlab_credential_by_id(self, credential_id: int) -> Optional[GitLabCredential]:
        if credential_id is None:
            return None
        return next((c for c in self._gitlab_credentials if c.id == credential_id), None)

    def get_gitlab_credential_by_name(self, name: str) -> Optional[GitLabCredential]:
        name = _optional_text(name)
        if name is None:
            return None
        key = name.lower()
        return next((c for c in self._gitlab_credentials if c.name.lower() == key), None)

    def update_gitlab_credential_token(self, credential_id: int, new_encrypted_token: str) -> None:
        new_encrypted_token = _require_text(new_encrypted_token, "Encrypted token")
        credential = self.get_gitlab_credential_by_id(credential_id)
        if credential is None:
            raise InvalidOperationError(f"GitLab credential {credential_id} not found.")

        credential.encrypted_access_token = new_encrypted_token
        self._touch()

    def _detach_credential(self, credential: GitLabCredential) -> None:
        self._gitlab_credentials.remove(credential)
        credential.application_user = None
        credential.application_user_id = None
        self._touch()
        logger.debug(f"Unlinked GitLab credential '{credential.name}' from user '{self.id}'.")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ApplicationUser):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __str__(self) -> str:
        return f"{self.display_name} ({self.id or self.user_name})"


GitLabCredential.model_rebuild()
