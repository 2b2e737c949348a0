"""
Persistence boundary for forms.

Every mutation of an existing form goes through ``atomic_update`` (or
``atomic_delete``): the form is re-read under a per-id lock and a row lock,
the caller's function runs against that fresh copy, and the whole change is
committed or rolled back as one unit. The mapper's version column catches
writers outside this process.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from formflow.models.domain import Form
from formflow.services.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class KeyedLocks:
    """
    One mutex per key, created on demand and dropped when unused.

    The registry mutex only guards the map itself, so work on different
    keys never waits on each other.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Shared by every repository in the process
record_locks = KeyedLocks()


class FormRepository:
    """Load, insert, update and delete forms on one session."""

    def __init__(self, db: Session, locks: KeyedLocks = record_locks):
        self.db = db
        self.locks = locks

    def load(self, form_id: str) -> Form:
        form = self.db.query(Form).filter(Form.id == form_id).first()
        if form is None:
            raise NotFoundError("Form not found")
        return form

    def query_all(self) -> List[Form]:
        return self.db.query(Form).order_by(Form.created_at.desc(), Form.id).all()

    def insert(self, form: Form) -> Form:
        try:
            self.db.add(form)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(form)
        return form

    def atomic_update(self, form_id: str, fn: Callable[[Form], Form]) -> Form:
        """
        Read-modify-write one form as a single unit.

        ``fn`` receives the form as currently stored and returns it mutated.
        Any exception it raises discards the whole change.
        """
        with self.locks.hold(form_id):
            try:
                form = fn(self._load_for_update(form_id))
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.warning("Concurrent modification of form %s detected", form_id)
                raise ConflictError("Form was modified concurrently; reload and retry")
            except Exception:
                self.db.rollback()
                raise
        return form

    def atomic_delete(self, form_id: str, guard: Callable[[Form], None]) -> None:
        """
        Delete one form, provided ``guard`` accepts it.

        ``guard`` runs against the freshly loaded form and vetoes by raising.
        """
        with self.locks.hold(form_id):
            try:
                form = self._load_for_update(form_id)
                guard(form)
                self.db.delete(form)
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                raise ConflictError("Form was modified concurrently; reload and retry")
            except Exception:
                self.db.rollback()
                raise

    def _load_for_update(self, form_id: str) -> Form:
        # populate_existing discards anything this session cached earlier
        form = (
            self.db.query(Form)
            .filter(Form.id == form_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if form is None:
            raise NotFoundError("Form not found")
        return form
