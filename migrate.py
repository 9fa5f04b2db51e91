"""
Apply or inspect schema migrations without starting the web server.

Usage:
  python migrate.py             # upgrade to head
  python migrate.py current     # print the applied revision
  python migrate.py downgrade   # drop the schema (asks for confirmation)

Startup DDL and the bootstrap admin are disabled while the app module is
imported; Flask-Migrate (Alembic) applies the versions in migrations/.
"""

import logging
import os
import sys

MIGRATIONS_DIR = 'migrations'
COMMANDS = ('upgrade', 'current', 'downgrade')


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    command = (argv[0] if argv else 'upgrade').strip().lower()
    if command not in COMMANDS:
        print(f"Unknown command {command!r}. Use one of: {', '.join(COMMANDS)}", file=sys.stderr)
        sys.exit(2)

    os.environ['RUN_STARTUP_DDL'] = '0'
    os.environ['RUN_STARTUP_BOOTSTRAP'] = '0'

    import exam_admin
    from flask_migrate import current, downgrade, upgrade

    if command == 'downgrade':
        answer = input("This drops every exam records table. Type 'yes' to continue: ")
        if answer.strip().lower() != 'yes':
            print("Aborted.")
            return

    try:
        with exam_admin.app.app_context():
            if command == 'current':
                current(directory=MIGRATIONS_DIR)
                return
            if command == 'downgrade':
                downgrade(directory=MIGRATIONS_DIR, revision='base')
                logging.warning("[MIGRATE] schema downgraded to base")
                print("Schema dropped.")
                return
            print("Applying database migrations...")
            upgrade(directory=MIGRATIONS_DIR)
        logging.info("[MIGRATE] schema upgraded to head")
        print("Migrations completed successfully.")
    except Exception as e:
        logging.exception("[MIGRATE] %s failed", command)
        print(f"Migration {command} failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
