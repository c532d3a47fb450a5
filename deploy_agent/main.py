# deploy_agent/main.py  (엔트리포인트)
import os

from dotenv import load_dotenv

# 루트 .env 로딩 (settings보다 먼저)
load_dotenv()

from deploy_agent.backend.main import create_app  # noqa: E402

app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
