"""Check IMAP access with environment variables and list recent message headers."""

import email
import sys
from pathlib import Path

from dotenv import load_dotenv

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from billmail.config import Config
from billmail.ingestion import ImapMailbox, MailboxError
from billmail.processing import decode_email_header


def check_imap_access(limit: int = 20) -> bool:
    """Select the configured mailbox and print the newest headers."""
    env_file = Path(__file__).parent.parent / ".env"
    if env_file.exists():
        load_dotenv(env_file)
        print(f"Loaded environment from {env_file}\n")
    else:
        print("Using system environment variables\n")

    config = Config.from_env()

    print("Configuration:")
    print(f"  Host: {config.imap_host}:{config.imap_port} (secure={config.imap_secure})")
    print(f"  User: {config.imap_user}")
    print(f"  Auth: {'XOAUTH2' if config.imap_access_token else 'password'}")
    print(f"  Mailbox: {config.mailbox}")
    print()

    mailbox = ImapMailbox(
        host=config.imap_host,
        port=config.imap_port,
        secure=config.imap_secure,
        username=config.imap_user,
        password=config.imap_password,
        access_token=config.imap_access_token,
        client_id=config.google_oauth2_client_id,
        client_secret=config.google_oauth2_client_secret,
        refresh_token=config.imap_refresh_token,
    )

    try:
        with mailbox.locked(config.mailbox) as info:
            print(f"Selected {info.name}: uidvalidity={info.uid_validity}, "
                  f"uidnext={info.uid_next}, exists={info.exists}\n")

            for uid, header in mailbox.fetch_headers(limit):
                msg = email.message_from_bytes(header)
                subject = decode_email_header(msg.get("Subject"))
                sender = decode_email_header(msg.get("From"))
                print(f"  {uid:>8}  {sender[:40]:<40}  {subject[:60]}")
    except MailboxError as e:
        print(f"ERROR: {e}")
        return False
    finally:
        mailbox.close()

    print("\nIMAP access OK")
    return True


if __name__ == "__main__":
    limit = int(sys.argv[1]) if len(sys.argv) > 1 else 20
    sys.exit(0 if check_imap_access(limit) else 1)
