import uvicorn

from .settings import load_settings


def main():
    s = load_settings()
    uvicorn.run("codebox.api:create_app", factory=True, host=s.host, port=s.port)


if __name__ == "__main__":
    main()
