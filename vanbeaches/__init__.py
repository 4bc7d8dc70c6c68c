"""Vancouver beach conditions service: cached tide, weather and water-quality data."""
