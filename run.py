"""
Foldly - Quick Start Script
Run this to start the development server
"""

import uvicorn
from foldly.config import settings

if __name__ == "__main__":
    print("=" * 60)
    print("Starting Foldly API Server")
    print("=" * 60)
    print(f"Environment: {settings.ENVIRONMENT}")
    print(f"Server: http://{settings.HOST}:{settings.PORT}")
    print(f"Storage backend: {settings.STORAGE_BACKEND}")
    print(f"API Docs: http://{settings.HOST}:{settings.PORT}/docs")
    print("=" * 60)
    print("\nMake sure you have:")
    print("  - PostgreSQL running")
    print("  - Redis running (Celery broker for OTP mail and reconciliation)")
    print("  - .env file configured")
    print("  - Database migrations run (alembic upgrade head)")
    print("\nPress CTRL+C to stop\n")

    uvicorn.run(
        "foldly.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
