from app.main import app

if __name__ == "__main__":
    import os

    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
