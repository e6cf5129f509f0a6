from app.campusvoice import create_app

app = create_app()
