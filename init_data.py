import os

from app import create_app
from models import db, Department, Teacher, User
from auth import hash_password
from utils.excel_utils import create_template_from_fields


def init_sample_data(app):
    with app.app_context():
        # start from an empty database
        db.drop_all()
        db.create_all()

        departments = [
            Department(name="Computer Science", code="CS"),
            Department(name="Software Engineering", code="SE"),
            Department(name="Artificial Intelligence", code="AI"),
        ]
        db.session.add_all(departments)
        db.session.flush()

        teachers = [
            Teacher(name="Zhang Wei", email="zhang@university.edu.cn",
                    department_id=departments[0].id, phone="13800138000"),
            Teacher(name="Li Na", email="li@university.edu.cn",
                    department_id=departments[0].id, phone="13800138001"),
            Teacher(name="Wang Fang", email="wang@university.edu.cn",
                    department_id=departments[1].id, phone="13800138002"),
            Teacher(name="Zhao Lei", email="zhao@university.edu.cn",
                    department_id=departments[2].id, phone="13800138003"),
            # no department: shown as "unassigned"
            Teacher(name="Chen Jie", email="chen@university.edu.cn"),
        ]
        db.session.add_all(teachers)

        admin = User(username="admin", password_hash=hash_password("admin123"))
        db.session.add(admin)
        db.session.commit()

        template_path = os.path.join(app.config['UPLOAD_DIR'], 'sample_template.xlsx')
        create_template_from_fields(['Name', 'Staff No.', 'Department', 'Phone', 'Notes'], template_path)

        print("Sample data initialised:")
        print(f"- {len(departments)} departments")
        print(f"- {len(teachers)} teachers")
        print("- user admin / admin123")
        print(f"- sample Excel template: {template_path}")


if __name__ == "__main__":
    init_sample_data(create_app(overrides={'ENABLE_EMAIL_SCHEDULER': False}))
