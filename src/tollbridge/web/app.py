"""
Django application initialization.
"""

import os
from pathlib import Path


def _apply_paths(config_path: str | None, state_db_path: str | None) -> None:
    """Expose config and state DB locations to the Django settings module."""
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "tollbridge.web.settings")

    if config_path:
        os.environ["TOLLBRIDGE_CONFIG"] = str(config_path)
    if state_db_path:
        os.environ["STATE_DB_PATH"] = str(state_db_path)
    elif config_path and "STATE_DB_PATH" not in os.environ:
        from ..config import load_config

        os.environ["STATE_DB_PATH"] = str(load_config(config_path).state_db_path)


def get_wsgi_application(config_path: str | None = None, state_db_path: str | None = None):
    """
    Get the Django WSGI application configured with our settings.

    Deploy hook for WSGI servers, e.g.
    `gunicorn "tollbridge.web.app:get_wsgi_application()"`.

    Args:
        config_path: Path to config.yaml (optional)
        state_db_path: Path to the state DB (optional, overrides config)
    """
    _apply_paths(config_path, state_db_path)

    from django.core.wsgi import get_wsgi_application as django_wsgi

    application = django_wsgi()
    prepare_auth_db()
    return application


def prepare_auth_db() -> None:
    """Create or upgrade the Django auth and session tables."""
    from django.conf import settings
    from django.core.management import call_command

    auth_db = str(settings.DATABASES["default"]["NAME"])
    if auth_db != ":memory:":
        Path(auth_db).parent.mkdir(parents=True, exist_ok=True)
    call_command("migrate", interactive=False, verbosity=0)


def create_admin(
    username: str,
    password: str,
    config_path: str | None = None,
    state_db_path: str | None = None,
) -> bool:
    """
    Create a staff superuser, or reset the password of an existing one.

    Returns:
        True when a new user was created
    """
    _apply_paths(config_path, state_db_path)

    import django

    django.setup()
    prepare_auth_db()

    from django.contrib.auth import get_user_model

    User = get_user_model()
    user = User.objects.filter(username=username).first()
    if user is None:
        User.objects.create_superuser(username=username, password=password)
        return True

    user.set_password(password)
    user.is_staff = True
    user.is_superuser = True
    user.save()
    return False


def run_server(
    host: str = "127.0.0.1",
    port: int = 8080,
    config_path: str | None = None,
    state_db_path: str | None = None,
) -> None:
    """
    Run the Django development server.

    Args:
        host: Host to bind to
        port: Port to listen on
        config_path: Path to config.yaml
        state_db_path: Path to the state DB (overrides config)
    """
    _apply_paths(config_path, state_db_path)

    import django

    django.setup()
    prepare_auth_db()

    from django.core.management import execute_from_command_line

    print(f"\n🌐 Starting toll API at http://{host}:{port}/toll/")
    print(f"💾 State DB: {os.environ.get('STATE_DB_PATH', 'data/toll.db')}")
    print(f"🔑 Sign in at http://{host}:{port}/login/")
    print("\nPress Ctrl+C to stop.\n")

    execute_from_command_line(
        [
            "manage.py",
            "runserver",
            f"{host}:{port}",
            "--noreload",
        ]
    )
