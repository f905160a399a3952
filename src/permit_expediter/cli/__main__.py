from permit_expediter.cli import app

app()
