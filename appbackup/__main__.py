from .cli import app

app(prog_name="app-backup")
