from app.gradeai import create_app

app = create_app()
