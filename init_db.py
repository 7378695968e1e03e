"""
Initialize the database with tables and the default PAM policy
"""
from server import app
from models import db, AppSetting
from core.pam.config import PamPolicyConfig
from core.pam.constants import PAM_CONFIG_KEY


def init_database():
    """Create all database tables"""
    with app.app_context():
        # Create tables
        db.create_all()
        print("Database tables created successfully")

        # Seed the policy document once; later edits go through PUT /api/pam/config
        if db.session.get(AppSetting, PAM_CONFIG_KEY) is None:
            config = PamPolicyConfig()
            db.session.add(AppSetting(
                key=PAM_CONFIG_KEY,
                value=config.to_dict(),
                description='PAM system configuration',
            ))
            db.session.commit()
            print("Seeded default PAM policy:")
            for key, value in sorted(config.to_dict().items()):
                print(f"   - {key}: {value}")
        else:
            print("PAM policy already exists, skipping seed.")


if __name__ == '__main__':
    init_database()
