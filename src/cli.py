#!/usr/bin/env python3
"""
Rating Engine Command Line Interface.

Provides commands for running and managing the rating engine:
    - serve: Start the API server
    - check: Verify installation and configuration
    - info: Display configuration and storage information
    - rebuild: Recompute subject statistics from stored ratings

Usage:
    ratingengine serve [--host HOST] [--port PORT] [--debug]
    ratingengine check
    ratingengine info
    ratingengine rebuild [SUBJECT_ID ...]
    ratingengine --version
"""

import argparse
import os
import sys

__version__ = "0.1.0"

# Ensure src is in path when running from source
if os.path.exists(os.path.join(os.path.dirname(__file__), "rating_engine.py")):
    sys.path.insert(0, os.path.dirname(__file__))


def cmd_serve(args):
    """Start the rating engine API server."""
    from dotenv import load_dotenv

    load_dotenv()

    host = args.host or os.getenv("HOST", "0.0.0.0")
    port = args.port or int(os.getenv("PORT", 5000))
    debug = args.debug or os.getenv("FLASK_DEBUG", "").lower() == "true"

    print(f"Starting rating engine API server on {host}:{port}")

    if args.production:
        try:
            import gunicorn.app.base

            class StandaloneApplication(gunicorn.app.base.BaseApplication):
                """Gunicorn WSGI application wrapper for production deployment."""

                def __init__(self, app, options=None):
                    self.options = options or {}
                    self.application = app
                    super().__init__()

                def load_config(self):
                    for key, value in self.options.items():
                        if key in self.cfg.settings and value is not None:
                            self.cfg.set(key.lower(), value)

                def load(self):
                    return self.application

            flask_app = _get_flask_app()
            options = {
                "bind": f"{host}:{port}",
                "workers": args.workers or int(os.getenv("WORKERS", 4)),
                "worker_class": "sync",
                "timeout": 120,
                "accesslog": "-",
                "errorlog": "-",
            }
            if options["workers"] > 1 and not os.getenv("REDIS_URL"):
                print("Warning: several workers without REDIS_URL do not share rate limits or locks")
            StandaloneApplication(flask_app, options).run()

        except ImportError as e:
            if "gunicorn" in str(e):
                print(
                    "Error: gunicorn not installed. Install with: pip install rating-engine[production]"
                )
            else:
                print(f"Error: {e}")
            sys.exit(1)
    else:
        flask_app = _get_flask_app()
        flask_app.run(host=host, port=port, debug=debug)


def _get_flask_app():
    """Get the Flask application instance."""
    from api import create_app

    return create_app()


def cmd_check(args):
    """Check installation and configuration."""
    print("Rating Engine Installation Check")
    print("=" * 40)

    checks = []

    try:
        import rating_engine  # noqa: F401

        checks.append(("Core engine", "OK"))
    except ImportError as e:
        checks.append(("Core engine", f"FAIL: {e}"))

    try:
        from api import create_app  # noqa: F401

        checks.append(("Flask API", "OK"))
    except ImportError as e:
        checks.append(("Flask API", f"FAIL: {e}"))

    try:
        from storage import get_storage_backend

        storage = get_storage_backend()
        backend_name = storage.__class__.__name__
        available = storage.is_available()
        status = "OK" if available else "WARN (not available)"
        checks.append((f"Storage ({backend_name})", status))
    except Exception as e:
        checks.append(("Storage", f"FAIL: {e}"))

    try:
        from scaling import get_cache, get_lock_manager

        lock_type = get_lock_manager().__class__.__name__
        cache_type = get_cache().__class__.__name__
        checks.append((f"Scaling (Lock: {lock_type})", "OK"))
        checks.append((f"Scaling (Cache: {cache_type})", "OK"))
    except Exception as e:
        checks.append(("Scaling", f"FAIL: {e}"))

    try:
        import redis  # noqa: F401

        checks.append(("Redis support", "OK"))
    except ImportError:
        checks.append(("Redis support", "SKIP (redis not installed)"))

    try:
        import psycopg2  # noqa: F401

        checks.append(("PostgreSQL support", "OK"))
    except ImportError:
        checks.append(("PostgreSQL support", "SKIP (psycopg2 not installed)"))

    print()
    all_ok = True
    for name, status in checks:
        icon = "✓" if status == "OK" else ("○" if "SKIP" in status else "✗")
        print(f"  {icon} {name}: {status}")
        if "FAIL" in status:
            all_ok = False

    print()
    if all_ok:
        print("All checks passed!")
        return 0
    else:
        print("Some checks failed. See above for details.")
        return 1


def cmd_info(args):
    """Display system information."""
    import platform

    from rating_engine import EngineConfig

    print("Rating Engine System Information")
    print("=" * 40)
    print(f"Version: {__version__}")
    print(f"Python: {platform.python_version()}")
    print(f"Platform: {platform.platform()}")

    config = EngineConfig.from_env()
    print()
    print("Configuration:")
    print(f"  STORAGE_BACKEND: {os.getenv('STORAGE_BACKEND', 'memory (default)')}")
    print(f"  REDIS_URL: {'configured' if os.getenv('REDIS_URL') else 'not set'}")
    print(f"  DATABASE_URL: {'configured' if os.getenv('DATABASE_URL') else 'not set'}")
    print(f"  LOG_LEVEL: {os.getenv('LOG_LEVEL', 'INFO (default)')}")
    print(f"  LOG_FORMAT: {os.getenv('LOG_FORMAT', 'console (default)')}")
    print(f"  Rate limit: {config.rate_limit.submissions_per_window} per {config.rate_limit.window_seconds:.0f}s "
          f"(block {config.rate_limit.block_seconds:.0f}s, backend {config.rate_limit.backend})")
    print(f"  Re-rate cooldown: {config.duplicate.cooldown_seconds:.0f}s")
    print(f"  Security webhook: {'configured' if os.getenv('SECURITY_WEBHOOK_URL') else 'not set'}")

    print()
    print("Storage:")
    try:
        from storage import get_storage_backend

        storage = get_storage_backend()
        info = storage.get_info()
        for key, value in info.items():
            print(f"  {key}: {value}")
    except Exception as e:
        print(f"  Error: {e}")

    return 0


def cmd_rebuild(args):
    """Recompute statistics from the configured storage."""
    from dotenv import load_dotenv

    load_dotenv()

    from rating_engine import EngineConfig, RatingEngine

    config = EngineConfig.from_env()
    config.rebuild_on_start = False
    config.asynchronous_broadcast = False
    engine = RatingEngine(config)

    try:
        subjects = args.subjects or engine.store.list_subjects()
        if not subjects:
            print("No subjects found.")
            return 0
        for subject_id in subjects:
            stats = engine.rebuild_statistics(subject_id)
            print(f"  {subject_id}: {stats.count} ratings, mean {stats.mean}, trend {stats.trend.value}")
        print(f"Rebuilt {len(subjects)} subject(s).")
        return 0
    except Exception as e:
        print(f"Error: {e}")
        return 1
    finally:
        engine.close()


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="ratingengine",
        description="Rating integrity and aggregation engine",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", help="Host to bind to (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: 5000)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    serve_parser.add_argument(
        "--production", action="store_true", help="Use gunicorn for production"
    )
    serve_parser.add_argument("--workers", type=int, help="Number of workers (production mode)")

    subparsers.add_parser("check", help="Check installation and configuration")

    subparsers.add_parser("info", help="Display system information")

    rebuild_parser = subparsers.add_parser("rebuild", help="Recompute statistics from stored ratings")
    rebuild_parser.add_argument("subjects", nargs="*", help="Subject ids (default: all)")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "check":
        sys.exit(cmd_check(args))
    elif args.command == "info":
        sys.exit(cmd_info(args))
    elif args.command == "rebuild":
        sys.exit(cmd_rebuild(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
