from celery import Task

from commerce_sync.db.session import SessionLocal


class DatabaseTask(Task):
    """Task base owning one session per task run; rolled back on failure."""
    _db = None

    @property
    def db(self):
        if self._db is None:
            self._db = SessionLocal()
        return self._db

    def after_return(self, status, retval, task_id, args, kwargs, einfo):
        if self._db is not None:
            if status == "FAILURE" or status == "RETRY":
                self._db.rollback()
            self._db.close()
            self._db = None
