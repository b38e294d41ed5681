"""
Exclusive-flag transitions

Addresses (scope = user + address_type) and payment methods (scope = user)
share one rule: at most one live row in a scope has is_default = true.
Every change to the flag goes through ExclusiveFlag, which clears the
flag across the scope and sets it on the target inside ONE storage
transaction, serialized per scope. Callers never see an intermediate
state with zero or two defaults.

Models used with this helper must have: id, user_id, is_default, is_deleted.
"""
import logging
from typing import Any, Dict, Optional, Type

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from labelbay.core.exceptions import NotFoundError, ValidationError
from labelbay.core.locks import KeyedLockManager, default_flag_locks

logger = logging.getLogger(__name__)


class ExclusiveFlag:
    """
    Single-default transition for one model.

    Usage:
        flag = ExclusiveFlag(Address, session_factory, scope_fields=("address_type",))
        address = await flag.set_default(user_id, address_id, address_type=AddressType.SHIPPING)
    """

    def __init__(
        self,
        model: Type[Any],
        session_factory: async_sessionmaker,
        scope_fields: tuple = (),
        locks: Optional[KeyedLockManager] = None,
    ):
        self.model = model
        self._session_factory = session_factory
        self.scope_fields = scope_fields
        self._locks = locks if locks is not None else default_flag_locks

    def _scope(self, values: Dict[str, Any]) -> Dict[str, Any]:
        missing = [f for f in self.scope_fields if values.get(f) is None]
        if missing:
            raise ValidationError(f"Missing scope field(s): {', '.join(missing)}", field=missing[0])
        return {f: values[f] for f in self.scope_fields}

    def _lock_key(self, owner_id: str, scope: Dict[str, Any]) -> tuple:
        return (self.model.__tablename__, owner_id) + tuple(
            getattr(v, "value", v) for _, v in sorted(scope.items())
        )

    async def _clear(
        self,
        db: AsyncSession,
        owner_id: str,
        scope: Dict[str, Any],
        except_id: Optional[str] = None,
    ) -> int:
        conditions = [
            self.model.user_id == owner_id,
            self.model.is_default == True,  # noqa: E712
        ]
        for field_name, value in scope.items():
            conditions.append(getattr(self.model, field_name) == value)
        if except_id is not None:
            conditions.append(self.model.id != except_id)

        result = await db.execute(
            update(self.model).where(and_(*conditions)).values(is_default=False)
        )
        return result.rowcount

    async def set_default(self, owner_id: str, target_id: str, **scope_values) -> Any:
        """
        Make target_id the only default in its scope.

        Raises NotFoundError when the target is missing, deleted or owned by
        someone else, and ValidationError when it belongs to another scope.
        The previous default is untouched on failure.
        """
        scope = self._scope(scope_values)
        async with self._locks.hold(self._lock_key(owner_id, scope)):
            async with self._session_factory() as db:
                result = await db.execute(
                    select(self.model).where(
                        and_(
                            self.model.id == target_id,
                            self.model.user_id == owner_id,
                            self.model.is_deleted == False,  # noqa: E712
                        )
                    )
                )
                target = result.scalar_one_or_none()
                if target is None:
                    raise NotFoundError(
                        f"{self.model.__name__} not found",
                        resource=self.model.__tablename__,
                        resource_id=target_id,
                    )

                for field_name, value in scope.items():
                    if getattr(target, field_name) != value:
                        raise ValidationError(
                            f"{self.model.__name__} {target_id} is not in scope {field_name}={getattr(value, 'value', value)}",
                            field=field_name,
                        )

                cleared = await self._clear(db, owner_id, scope, except_id=target_id)
                target.is_default = True
                await db.commit()
                await db.refresh(target)

        logger.info(
            f"[DEFAULT] {self.model.__tablename__} default for user {owner_id} -> {target_id} "
            f"(cleared {cleared})"
        )
        return target

    async def insert(self, instance: Any, make_default: bool) -> Any:
        """
        Insert a new row; when make_default is set, the old default in the
        same scope is cleared in the same transaction.
        """
        scope = self._scope({f: getattr(instance, f) for f in self.scope_fields})
        owner_id = instance.user_id
        async with self._locks.hold(self._lock_key(owner_id, scope)):
            async with self._session_factory() as db:
                if make_default:
                    await self._clear(db, owner_id, scope)
                instance.is_default = make_default
                db.add(instance)
                await db.commit()
                await db.refresh(instance)
        return instance

    async def soft_delete(self, owner_id: str, target_id: str) -> Any:
        """Mark a row deleted and drop its default flag. No other row is promoted."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(self.model).where(
                    and_(
                        self.model.id == target_id,
                        self.model.user_id == owner_id,
                        self.model.is_deleted == False,  # noqa: E712
                    )
                )
            )
            target = result.scalar_one_or_none()
            if target is None:
                raise NotFoundError(
                    f"{self.model.__name__} not found",
                    resource=self.model.__tablename__,
                    resource_id=target_id,
                )
            scope = {f: getattr(target, f) for f in self.scope_fields}

        async with self._locks.hold(self._lock_key(owner_id, scope)):
            async with self._session_factory() as db:
                result = await db.execute(
                    update(self.model)
                    .where(
                        and_(
                            self.model.id == target_id,
                            self.model.user_id == owner_id,
                            self.model.is_deleted == False,  # noqa: E712
                        )
                    )
                    .values(is_deleted=True, is_default=False)
                )
                if result.rowcount != 1:
                    raise NotFoundError(
                        f"{self.model.__name__} not found",
                        resource=self.model.__tablename__,
                        resource_id=target_id,
                    )
                await db.commit()
        target.is_deleted = True
        target.is_default = False
        return target
