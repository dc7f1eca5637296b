import datetime
import logging
import math
import random

import httpx

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SEC = 8.0

# (upper bound of pm2.5 band, label, color)
AQI_BANDS = (
    (12.0, "Good", "#4CAF50"),
    (35.4, "Moderate", "#FFC107"),
    (55.4, "Unhealthy for sensitive groups", "#FF9800"),
    (150.4, "Unhealthy", "#F44336"),
    (250.4, "Very unhealthy", "#C62828"),
)
AQI_HAZARDOUS = ("Hazardous", "#6D1B1B")


def default_api_config():
    return {
        "weatherApi": {
            "provider": "openweathermap",
            "url": "https://api.openweathermap.org/data/2.5/weather",
            "apiKey": "",
            "params": {"lat": 10.7769, "lon": 106.7009, "units": "metric"},
        },
        "airQualityApi": {
            "provider": "waqi",
            "url": "https://api.waqi.info/feed/@13659/",
            "token": "",
        },
        "refreshInterval": 10000,
        "autoRefresh": True,
    }


def calculate_aqi(pm25):
    for upper, level, color in AQI_BANDS:
        if pm25 <= upper:
            return {"level": level, "color": color}
    return {"level": AQI_HAZARDOUS[0], "color": AQI_HAZARDOUS[1]}


def mock_combined_data():
    return {
        "temperature": 26.5,
        "humidity": 70,
        "pm25": 35,
        "location": "Mock Data",
        "timestamp": datetime.datetime.utcnow().replace(microsecond=0).isoformat() + "Z",
        "aqi": calculate_aqi(35),
        "weather": "clear sky",
    }


def _coords(params):
    try:
        lat = float(params.get("lat"))
        lon = float(params.get("lon"))
    except (TypeError, ValueError, AttributeError):
        raise ValueError(f"Invalid coordinates ({params!r})")
    if not (math.isfinite(lat) and math.isfinite(lon)) or not (-90 <= lat <= 90 and -180 <= lon <= 180):
        raise ValueError(f"Invalid coordinates (lat={lat}, lon={lon})")
    return lat, lon


def fetch_weather(client, weather_api):
    lat, lon = _coords(weather_api.get("params") or {})
    res = client.get(
        weather_api["url"],
        params={
            "lat": lat,
            "lon": lon,
            "appid": weather_api.get("apiKey", ""),
            "units": (weather_api.get("params") or {}).get("units", "metric"),
        },
    )
    data = res.json()
    main = data.get("main") or {}
    if main.get("temp") is None:
        return None
    description = ((data.get("weather") or [{}])[0] or {}).get("description")
    return {
        "temperature": round(float(main["temp"]) * 10) / 10,
        "humidity": int(round(float(main.get("humidity", 0)))),
        "weather": description,
    }


def fetch_pm25(client, air_api):
    res = client.get(air_api["url"], params={"token": air_api.get("token", "")})
    data = res.json()
    if data.get("status") != "ok":
        return None, None
    body = data.get("data") or {}
    pm = ((body.get("iaqi") or {}).get("pm25") or {}).get("v")
    if isinstance(pm, (int, float)) and not isinstance(pm, bool) and pm:
        return float(pm), "Real (WAQI PM2.5)"
    aqi = body.get("aqi")
    if isinstance(aqi, (int, float)) and not isinstance(aqi, bool) and aqi > 0:
        return float(aqi), "Real (WAQI AQI)"
    return None, None


def fetch_combined_data(config, client=None):
    """
    Temperature + humidity from the weather provider and PM2.5 from the air-quality one.

    Each lookup falls back to simulated values on its own; this never raises for
    provider problems.
    """
    weather_api = (config or {}).get("weatherApi") or {}
    air_api = (config or {}).get("airQualityApi") or {}

    temp = 26 + random.random() * 5
    humidity = 70 + random.random() * 10
    weather = "partly cloudy"
    pm25 = 25 + random.random() * 20
    pm_source = "Simulated"

    own_client = client is None
    if own_client:
        client = httpx.Client(timeout=REQUEST_TIMEOUT_SEC)
    try:
        try:
            got = fetch_weather(client, weather_api)
            if got:
                temp, humidity = got["temperature"], got["humidity"]
                weather = got["weather"] or weather
                logger.info(f"Weather API OK: {temp}C, humidity {humidity}%")
            else:
                logger.warning("Weather API returned no usable data")
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Weather API error: {e}")

        try:
            value, source = fetch_pm25(client, air_api)
            if value is not None:
                pm25, pm_source = value, source
                logger.info(f"PM2.5 API OK: {pm25} ({source})")
            else:
                logger.warning("Air quality API returned no usable data, using simulated PM2.5")
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Air quality API error: {e}")
    finally:
        if own_client:
            client.close()

    params = weather_api.get("params") or {}
    return {
        "temperature": temp,
        "humidity": humidity,
        "pm25": round(pm25 * 10) / 10,
        "pm25Source": pm_source,
        "location": f"Lat: {params.get('lat')}, Lon: {params.get('lon')}",
        "timestamp": datetime.datetime.utcnow().replace(microsecond=0).isoformat() + "Z",
        "aqi": calculate_aqi(pm25),
        "weather": weather,
    }
