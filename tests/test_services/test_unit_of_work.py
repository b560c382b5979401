"""
Tests for the unit of work: commit, rollback and after-commit callbacks.
"""

import pytest
from sqlalchemy import select

from docledger.models.tables import Contact
from docledger.services.unit_of_work import UnitOfWork

from conftest import TENANT


def _contact(name: str) -> Contact:
    return Contact(tenant_id=TENANT, name=name)


async def _names(session_factory) -> list[str]:
    async with session_factory() as session:
        result = await session.execute(select(Contact.name))
        return sorted(result.scalars())


class TestUnitOfWork:

    async def test_callbacks_run_after_commit(self, session_factory):
        seen = []

        async def callback():
            seen.append(await _names(session_factory))

        async with UnitOfWork(session_factory) as uow:
            uow.session.add(_contact("Acme"))
            uow.on_commit(callback)

        assert seen == [["Acme"]]

    async def test_rollback_skips_callbacks(self, session_factory):
        seen = []

        async def callback():
            seen.append(True)

        with pytest.raises(RuntimeError):
            async with UnitOfWork(session_factory) as uow:
                uow.session.add(_contact("Acme"))
                uow.on_commit(callback)
                raise RuntimeError("boom")

        assert seen == []
        assert await _names(session_factory) == []

    async def test_failing_callback_does_not_fail_committed_work(self, session_factory):
        seen = []

        async def broken():
            raise ConnectionError("queue down")

        async def after():
            seen.append(True)

        async with UnitOfWork(session_factory) as uow:
            uow.session.add(_contact("Acme"))
            uow.on_commit(broken)
            uow.on_commit(after)

        assert seen == [True]
        assert await _names(session_factory) == ["Acme"]
