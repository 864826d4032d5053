from fitcoach.main import run

run()
