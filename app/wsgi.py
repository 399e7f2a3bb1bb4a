from app.etmf import create_app

app = create_app()
