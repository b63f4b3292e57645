#!/usr/bin/env python3
"""
Cart Upsell API Startup Script

Starts the FastAPI server locally with auto-reload.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the cart upsell API server."""
    print("🚀 Starting Cart Upsell API Server...")
    print("📊 Features:")
    print("   ✅ Storefront offers, shipping bar and tracking")
    print("   ✅ App proxy endpoints")
    print("   ✅ Embedded admin (rules, analytics, settings, billing)")
    print("   ✅ Shopify OAuth and webhooks")
    print("")
    print("📖 Documentation will be available at:")
    print("   🌐 Swagger UI:  http://localhost:8000/docs")
    print("   📚 ReDoc:       http://localhost:8000/redoc")
    print("   🔧 Admin Panel: http://localhost:8000/admin")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("⚠️  WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   TOKEN_ENCRYPTION_KEY=<run generate_keys.py>")
        print("   SHOPIFY_API_KEY / SHOPIFY_API_SECRET / SHOPIFY_APP_URL")
        print("")

    try:
        uvicorn.run(
            "cartupsell.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["cartupsell"],
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down Cart Upsell API server...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
