from app.enrollsage import create_app

app = create_app()
