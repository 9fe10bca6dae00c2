from mealpass import create_app

app = create_app()
