"""Offset project inventory: reserve, commit and release credits."""

import logging

from sqlalchemy import update

from .database import OffsetProject
from .errors import (Conflict, InsufficientCredits, InvalidInput, ProjectInactive,
                     ProjectNotFound)

logger = logging.getLogger(__name__)


class Reservation:
    """Credits taken out of a project's inventory within one unit of work."""

    def __init__(self, manager, project, amount):
        self.manager = manager
        self.project = project
        self.amount = amount
        self.state = "reserved"

    @property
    def project_id(self):
        return self.project.id

    def commit(self):
        if self.state != "reserved":
            raise Conflict("Reservation is not open", project_id=self.project_id, state=self.state)
        self.state = "committed"

    def release(self):
        """Return the reserved credits to the project."""
        if self.state != "reserved":
            raise Conflict("Reservation is not open", project_id=self.project_id, state=self.state)
        self.manager._restore(self.project, self.amount)
        self.state = "released"
        logger.info("Released %d credits back to project %s", self.amount, self.project_id)


class OffsetInventory:
    """
    Guards ``credits_available`` against overselling.

    A reservation is a conditional decrement: the UPDATE only matches while
    the project still has enough credits, so concurrent purchases can never
    drive the counter negative. When the guarded update misses, the
    availability is re-read and the decrement retried up to ``retries``
    times before the request is rejected.
    """

    def __init__(self, session, retries=1):
        self.session = session
        self.retries = retries

    def _load(self, project_id):
        project = self.session.get(OffsetProject, project_id, with_for_update=True,
                                   populate_existing=True)
        if project is None:
            raise ProjectNotFound(project_id)
        return project

    def reserve_credits(self, project_id, amount):
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidInput("Credit amount must be a positive integer",
                               project_id=project_id, amount=amount)

        attempts = 0
        while True:
            project = self._load(project_id)
            if not project.is_active:
                raise ProjectInactive(project_id)
            seen = project.credits_available
            if seen < amount:
                raise InsufficientCredits(project_id, attempted=amount, available=seen)

            result = self.session.execute(
                update(OffsetProject)
                .where(OffsetProject.id == project_id)
                .where(OffsetProject.is_active.is_(True))
                .where(OffsetProject.credits_available >= amount)
                .values(credits_available=OffsetProject.credits_available - amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                self.session.refresh(project)
                logger.debug("Reserved %d credits on project %s (%d left)",
                             amount, project_id, project.credits_available)
                return Reservation(self, project, amount)

            # availability changed between the check and the decrement
            self.session.expire(project)
            if attempts >= self.retries:
                project = self._load(project_id)
                logger.warning("Reservation of %d credits on project %s failed after %d retries",
                               amount, project_id, attempts)
                raise InsufficientCredits(project_id, attempted=amount,
                                          available=project.credits_available)
            attempts += 1
            logger.warning("Decrement of %d credits on project %s missed, retry %d of %d",
                           amount, project_id, attempts, self.retries)

    def _restore(self, project, amount):
        self.session.execute(
            update(OffsetProject)
            .where(OffsetProject.id == project.id)
            .values(credits_available=OffsetProject.credits_available + amount)
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(project)

    def available(self, project_id):
        project = self.session.get(OffsetProject, project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        return project.credits_available
