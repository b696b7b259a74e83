"""
Re-link sub-account rows to the current sub-users.

Sub-users re-created under a master keep their email, so ``subAccounts``
and ``ledgers`` rows are pointed at the user with the same email.
"""

from __future__ import annotations

from report_sync.migrations.base import Migration


class MigrationV5(Migration):
    version = 5
    description = "Re-link ledgers subUserId through subAccounts"

    def before(self) -> None:
        self.dao.disable_foreign_keys()

    def up(self) -> None:
        self.add_sql([
            """UPDATE subAccounts AS sa SET subUserId = COALESCE((
              SELECT _id FROM users WHERE isSubUser = 1 AND email = (
                SELECT email FROM users WHERE _id = sa.subUserId
              ) AND username LIKE '%-sub-user-' || (
                SELECT id FROM users WHERE isSubAccount = 1 AND _id = sa.masterUserId
              )
            ), sa.subUserId)""",
            """UPDATE ledgers AS up SET subUserId = (
              SELECT sa.subUserId FROM subAccounts AS sa
              WHERE sa.masterUserId = up.user_id AND EXISTS (
                SELECT 1 FROM users AS u WHERE u._id = up.subUserId AND u.email = (
                  SELECT email FROM users WHERE _id = sa.subUserId
                )
              )
            )
              WHERE subUserId IS NOT NULL""",
        ])

    def after(self) -> None:
        self.dao.enable_foreign_keys()
