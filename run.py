import socket

import uvicorn

from app.core.config import settings


def get_lan_ip():
    try:
        # Connect to a public DNS server to determine the route
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"


def main():
    port = settings.PORT
    url = f"http://{get_lan_ip()}:{port}"

    print("\n" + "=" * 60)
    print("SERVER STARTING")
    print(f"LAN URL:     {url}")
    print(f"Login page:  {url}/login")
    print(f"Webhook:     {url}/wechat")
    print("-" * 60)
    if not settings.WECHAT_TOKEN:
        print("NOTE: WECHAT_TOKEN is not set, webhook signatures will be rejected.")
    if not settings.WECHAT_APP_ID or not settings.WECHAT_APP_SECRET:
        print("NOTE: WECHAT_APP_ID / WECHAT_APP_SECRET are not set, QR codes cannot be created.")
    print("=" * 60 + "\n")

    # Session state lives in this process, so run a single worker
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=port,
        workers=1,
    )


if __name__ == "__main__":
    main()
