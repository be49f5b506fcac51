"""
Clinic Context Backend Entry Point

Run with: uvicorn clinic_context.main:app --reload --port 8000
Or: python main.py
"""

import os

from clinic_context.main import app

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clinic_context.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=True,
    )
