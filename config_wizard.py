import configparser
from getpass import getpass


def run_cli_setup_wizard(config_path: str = "config.ini", template_path: str = "config.ini.template") -> None:
    parser = configparser.ConfigParser()
    parser.optionxform = str
    parser.read([template_path, config_path])
    defaults = parser["DEFAULT"]

    def _get(name: str, fallback: str = "") -> str:
        for key, value in defaults.items():
            if key.upper() == name:
                return str(value).strip()
        return fallback

    def _set(name: str, value: str) -> None:
        for key in list(defaults.keys()):
            if key.upper() == name:
                defaults[key] = value
                return
        defaults[name] = value

    def _prompt(name: str, label: str, *, secret: bool = False, required: bool = True) -> str:
        current = _get(name)
        prompt = f"{label}"
        if current and not secret:
            prompt += f" [{current}]"
        elif current:
            prompt += " [keep current]"
        prompt += ": "
        while True:
            raw = getpass(prompt) if secret else input(prompt)
            value = raw.strip() or current
            if value or not required:
                _set(name, value)
                return value
            print("This value is required.")

    print("CLI Setup Wizard")
    print("Press Enter to accept defaults shown in brackets.\n")
    _prompt("NOTIFICATION_URL", "Notification webhook URL")
    _prompt("REDIS_URL", "Application registry Redis URL")
    _prompt("CHECK_INTERVAL_MINUTES", "Sweep interval in minutes")

    print("\nCaptcha solving service (Chaojiying):")
    _prompt("CJY_USERNAME", "Chaojiying username")
    _prompt("CJY_PASSWORD", "Chaojiying password", secret=True)
    _prompt("CJY_SOFT_ID", "Chaojiying software ID")
    _prompt("CJY_CODE_TYPE", "Chaojiying code type")

    mail_profiles = {
        "1": ("163.com", "smtp.163.com", "465", "imap.163.com", "993"),
        "2": ("Gmail", "smtp.gmail.com", "465", "imap.gmail.com", "993"),
        "3": ("Outlook", "smtp-mail.outlook.com", "465", "outlook.office365.com", "993"),
        "4": (
            "Custom",
            _get("SMTP_SERVER", "smtp.163.com"),
            _get("SMTP_PORT", "465"),
            _get("IMAP_SERVER", "imap.163.com"),
            _get("IMAP_PORT", "993"),
        ),
    }
    tracking = input("\nEnable passport email tracking? (True/False) [True]: ").strip() or "True"
    _set("EMAIL_TRACKING_ENABLED", tracking)
    if tracking.lower() in {"1", "true", "yes", "on"}:
        print("Mail provider:")
        print("  1) 163.com  2) Gmail  3) Outlook  4) Custom")
        profile_choice = input("Choose provider [1]: ").strip() or "1"
        _, smtp_server, smtp_port, imap_server, imap_port = mail_profiles.get(profile_choice, mail_profiles["1"])
        _set("SMTP_SERVER", smtp_server)
        _set("SMTP_PORT", smtp_port)
        _set("IMAP_SERVER", imap_server)
        _set("IMAP_PORT", imap_port)
        if profile_choice == "4":
            _prompt("SMTP_SERVER", "SMTP server")
            _prompt("SMTP_PORT", "SMTP SSL port")
            _prompt("IMAP_SERVER", "IMAP server")
            _prompt("IMAP_PORT", "IMAP SSL port")
        _prompt("MAIL_ACCOUNT", "Mail account (sends the request and receives the reply)")
        _prompt("MAIL_PASSWORD", "Mail password / authorization code", secret=True)

    with open(config_path, "w", encoding="utf-8") as handle:
        parser.write(handle)
    print(f"\nSaved configuration to {config_path}")
