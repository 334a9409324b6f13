#!/usr/bin/env python3
"""Development server runner for the Upload Relay.

This script checks the local setup (package installed, storage credentials
present, storage endpoint reachable) and then starts the server with
auto-reload.
"""

import os
import sys


def check_dependencies():
    """Check if the package is importable."""
    try:
        import upload_relay  # noqa: F401
        print("✅ Upload Relay package found")
        return True
    except ImportError:
        print("❌ Upload Relay not installed")
        print("   Run: pip install -e .[dev]")
        return False


def check_configuration():
    """Check that the storage credentials are set."""
    from upload_relay.config import Settings
    from upload_relay.exceptions import ConfigurationError
    from upload_relay.main import load_config

    try:
        config = load_config(Settings())
        config.require_complete()
    except ConfigurationError as e:
        print(f"❌ {e.message}")
        print("\n💡 Set them in your shell or in a .env file:")
        for name in e.missing:
            print(f"   {name}=...")
        return None

    print(f"✅ Bucket: {config.storage.bucket_name}")
    print(f"🔗 Endpoint: {config.storage.endpoint_url}")
    return config


def check_storage_endpoint(endpoint_url: str):
    """Check that the storage endpoint answers at all."""
    import httpx

    try:
        with httpx.Client() as client:
            response = client.get(endpoint_url, timeout=5.0)
        # Any HTTP answer (even 400/403 for an unsigned request) means it's reachable
        print(f"✅ Storage endpoint reachable (HTTP {response.status_code})")
        return True
    except Exception as e:
        print(f"❌ Cannot connect to storage endpoint {endpoint_url}")
        print(f"   Error: {e}")
        return False


def setup_environment():
    """Set up environment variables for development."""
    os.environ.setdefault("UPLOAD_RELAY_LOG_LEVEL", "DEBUG")
    os.environ.setdefault("UPLOAD_RELAY_JSON_LOGS", "false")
    os.environ.setdefault("UPLOAD_RELAY_STAGING_DIR", "./uploads")

    print(f"📊 Log level: {os.environ['UPLOAD_RELAY_LOG_LEVEL']}")
    print(f"📁 Staging directory: {os.environ['UPLOAD_RELAY_STAGING_DIR']}")


def main():
    """Main entry point."""
    print("🚀 Upload Relay Development Server")
    print("=" * 50)
    print()

    if not check_dependencies():
        return 1

    setup_environment()
    print()

    config = check_configuration()
    if config is None:
        return 1

    if not check_storage_endpoint(config.storage.endpoint_url):
        return 1

    print()
    print("🎯 Starting Upload Relay...")
    print(f"   Server will be available at: http://localhost:{config.server.port}")
    print(f"   Health check: http://localhost:{config.server.port}/health")
    print(f"   API docs: http://localhost:{config.server.port}/docs")
    print()
    print("📝 Logs will appear below:")
    print("-" * 50)

    try:
        import uvicorn

        uvicorn.run(
            "upload_relay.main:app",
            host="0.0.0.0",
            port=config.server.port,
            log_level="debug",
            reload=True,  # Auto-reload on code changes
            reload_dirs=["src"],  # Watch for changes in source directory
        )

    except KeyboardInterrupt:
        print("\n\n👋 Shutting down Upload Relay...")
    except Exception as e:
        print(f"\n❌ Error starting server: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
