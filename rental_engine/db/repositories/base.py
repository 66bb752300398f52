from sqlalchemy.orm import Session
from sqlalchemy.sql.dml import Update


class VersionedRepository:
    def __init__(self, session: Session):
        self.session = session

    def _compare_and_swap(self, stmt: Update, instance) -> bool:
        """Run a guarded UPDATE and reload `instance` when it matched.

        The caller's WHERE clause carries the expected state (version,
        status, bounds); zero affected rows means another transaction got
        there first.
        """
        result = self.session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.session.refresh(instance)
        return True
