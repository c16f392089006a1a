import logging

from dotenv import load_dotenv

from chatwith_backend import create_app

# Load environment variables from .env file
load_dotenv()

logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = create_app()
logging.getLogger().setLevel(app.config["LOG_LEVEL"])


def main() -> None:
    app.run(host="0.0.0.0", port=app.config.get("PORT", 5000), debug=False)


if __name__ == "__main__":
    main()
