from typing import Optional, Any, Union
from datetime import datetime, timezone
from collections.abc import Iterable, Iterator, Mapping, MutableMapping
from .models import EntityType, Environment


class CredentialContext(MutableMapping[str, Any]):
    """Credential dict-like object.

    Holds the decrypted values a skill needs, keyed by credential name,
    for injection into a tool's execution context. Values are reachable as
    ``ctx['stripe_key']`` or ``ctx.stripe_key``.

    The ``repr`` never shows a value, so a context can be logged or end up
    in a traceback safely. Call ``invalidate()`` once the tool returns.
    """

    # Internal attributes that should not be stored as credentials
    _internal_attrs = frozenset({
        '_values', '_ids', '_entity_id', '_entity_type', '_environment',
        '_created'
    })

    def __init__(
        self,
        data: Optional[Mapping[str, Any]] = None,
        *,
        entity_id: Optional[str] = None,
        entity_type: Union[EntityType, str] = EntityType.SKILL,
        environment: Optional[Union[Environment, str]] = None,
        ids: Optional[Mapping[str, str]] = None,
    ) -> None:
        object.__setattr__(self, '_values', dict(data or {}))
        object.__setattr__(self, '_ids', dict(ids or {}))
        self._entity_id = entity_id
        self._entity_type = EntityType(entity_type)
        self._environment = Environment(environment) if environment else None
        self._created = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        masked = {name: '***' for name in self._values}
        return (
            f'<CredentialContext [{self._entity_type.value}:{self._entity_id}] '
            f'credentials={masked!r}>'
        )

    # --- Properties ---

    @property
    def entity_id(self) -> Optional[str]:
        return self._entity_id

    @property
    def entity_type(self) -> EntityType:
        return self._entity_type

    @property
    def environment(self) -> Optional[Environment]:
        return self._environment

    @property
    def created(self) -> datetime:
        return self._created

    @property
    def empty(self) -> bool:
        return not bool(self._values)

    def credential_id(self, name: str) -> Optional[str]:
        """Id of the credential a name was resolved to, if known."""
        return self._ids.get(name)

    def invalidate(self) -> None:
        """Drop every decrypted value held by this context."""
        self._values.clear()
        self._ids.clear()

    # --- Magic Methods ---

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._values[key] = value

    def __delitem__(self, key: str) -> None:
        del self._values[key]
        self._ids.pop(key, None)

    def __getattr__(self, key: str) -> Any:
        # Avoid infinite recursion for internal attributes
        if key.startswith('_'):
            raise AttributeError(key)
        try:
            return self._values[key]
        except KeyError:
            raise AttributeError(key) from None

    def __setattr__(self, key: str, value: Any) -> None:
        if key in self._internal_attrs or key.startswith('_'):
            object.__setattr__(self, key, value)
        else:
            self._values[key] = value

    # --- Factory ---

    @classmethod
    async def for_skill(
        cls,
        vault: Any,
        skill_id: str,
        names: Iterable[str],
        *,
        environment: Optional[Union[Environment, str]] = None,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> "CredentialContext":
        """Resolve and retrieve every credential a skill declares.

        Each name is looked up in ``environment`` and retrieved through the
        access-checked path as the skill, so every value is audited.

        Args:
            vault: An open CredentialVault.
            skill_id: The requesting skill.
            names: Credential names the skill requires.
            environment: Environment to resolve names in.
            user_id: Caller on whose behalf the skill runs.
            ip_address: Caller address.

        Raises:
            CredentialNotFoundError: If a name does not resolve to an
                active credential.
            AccessDeniedError: If the skill lacks read access to one.
        """
        ctx = cls(
            entity_id=skill_id,
            entity_type=EntityType.SKILL,
            environment=environment,
        )
        request = {"user_id": user_id, "ip_address": ip_address}
        try:
            for name in names:
                meta = await vault.credentials.get_by_name(name, environment)
                credential = await vault.credentials.retrieve(
                    meta.id, skill_id, EntityType.SKILL, request
                )
                ctx._values[name] = credential.value
                ctx._ids[name] = credential.id
        except Exception:
            ctx.invalidate()
            raise
        return ctx
