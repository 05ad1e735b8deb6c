from relay_app.main import run

run()
