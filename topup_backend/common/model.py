from datetime import datetime
from typing import Annotated

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, MappedAsDataclass, declared_attr, mapped_column

from topup_backend.utils.timezone import timezone

# Shared primary key type
id_key = Annotated[
    int,
    mapped_column(sa.BigInteger().with_variant(sa.Integer, 'sqlite'), primary_key=True, index=True, autoincrement=True, comment='Primary key ID'),
]


class TimeZone(sa.TypeDecorator[datetime]):
    """Timezone-aware datetime stored as UTC on every backend."""

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: sa.Dialect) -> datetime | None:
        if value is None:
            return None
        return timezone.from_datetime(value)

    def process_result_value(self, value: datetime | None, dialect: sa.Dialect) -> datetime | None:
        if value is None:
            return None
        return timezone.from_datetime(value)


class DateTimeMixin(MappedAsDataclass):
    """Datetime mixin"""

    created_time: Mapped[datetime] = mapped_column(
        TimeZone, init=False, default_factory=timezone.now, comment='Creation time'
    )
    updated_time: Mapped[datetime | None] = mapped_column(
        TimeZone, init=False, default=None, onupdate=timezone.now, comment='Update time'
    )


class MappedBase(AsyncAttrs, DeclarativeBase):
    """
    Declarative base class

    `DeclarativeBase <https://docs.sqlalchemy.org/en/20/orm/declarative_config.html>`__
    """

    @declared_attr.directive
    def __table_args__(cls) -> dict:
        return {'comment': cls.__doc__ or ''}


class DataClassBase(MappedAsDataclass, MappedBase):
    """
    Declarative dataclass base class

    `MappedAsDataclass <https://docs.sqlalchemy.org/en/20/orm/dataclasses.html#orm-declarative-native-dataclasses>`__
    """

    __abstract__ = True


class Base(DataClassBase, DateTimeMixin):
    """Declarative dataclass base class with datetime columns"""

    __abstract__ = True
