# Charter Airport Mappings (ICAO codes, names, cities and timezones)
# Southern African charter bases first, then the long-haul destinations clients request most

import re

import pytz

AIRPORT_CODES = {
    # ===== SOUTH AFRICA =====
    "FAJS": "OR Tambo International", "FACT": "Cape Town International",
    "FALE": "King Shaka International", "FALA": "Lanseria International",
    "FAPE": "Chief Dawid Stuurman International", "FAWB": "Wonderboom",
    "FAGG": "George", "FABL": "Bram Fischer International", "FAKN": "Kruger Mpumalanga International",
    "FAHS": "Hoedspruit", "FAEL": "King Phalo",

    # ===== SOUTHERN AFRICA =====
    "FBSK": "Sir Seretse Khama International", "FBMN": "Maun",
    "FVFA": "Victoria Falls", "FVRG": "Robert Gabriel Mugabe International",
    "FYWH": "Hosea Kutako International", "FQMA": "Maputo International",
    "FLKK": "Kenneth Kaunda International", "FMMI": "Sir Seewoosagur Ramgoolam International",
    "FDSK": "King Mswati III International", "FXMM": "Moshoeshoe I International",

    # ===== AFRICA (OTHER) =====
    "HKJK": "Jomo Kenyatta International", "HTDA": "Julius Nyerere International",
    "HAAB": "Addis Ababa Bole International", "DNMM": "Murtala Muhammed International",
    "HECA": "Cairo International", "GMMN": "Mohammed V International",

    # ===== EUROPE =====
    "EGLL": "London Heathrow", "EGGW": "London Luton", "EGLF": "Farnborough",
    "LFPG": "Paris Charles de Gaulle", "LFPB": "Paris Le Bourget", "LFMN": "Nice Cote d'Azur",
    "EDDF": "Frankfurt", "EDDM": "Munich", "LSGG": "Geneva", "LSZH": "Zurich",
    "EHAM": "Amsterdam Schiphol", "LEMD": "Madrid Barajas", "LIRF": "Rome Fiumicino",
    "LPPT": "Lisbon Humberto Delgado",

    # ===== MIDDLE EAST & ASIA =====
    "OMDB": "Dubai International", "OMDW": "Dubai Al Maktoum", "OTHH": "Hamad International",
    "OERK": "King Khalid International", "VABB": "Mumbai Chhatrapati Shivaji",
    "VIDP": "Delhi Indira Gandhi", "WSSS": "Singapore Changi", "VHHH": "Hong Kong International",

    # ===== AMERICAS =====
    "KJFK": "New York JFK", "KTEB": "Teterboro", "KLAX": "Los Angeles International",
    "KVNY": "Van Nuys", "KMIA": "Miami International", "KOPF": "Miami-Opa Locka Executive",
    "CYYZ": "Toronto Pearson", "SBGR": "Sao Paulo Guarulhos",
}

AIRPORT_CITIES = {
    "FAJS": "Johannesburg", "FACT": "Cape Town", "FALE": "Durban", "FALA": "Johannesburg",
    "FAPE": "Gqeberha", "FAWB": "Pretoria", "FAGG": "George", "FABL": "Bloemfontein",
    "FAKN": "Nelspruit", "FAHS": "Hoedspruit", "FAEL": "East London",
    "FBSK": "Gaborone", "FBMN": "Maun", "FVFA": "Victoria Falls", "FVRG": "Harare",
    "FYWH": "Windhoek", "FQMA": "Maputo", "FLKK": "Lusaka", "FMMI": "Port Louis",
    "FDSK": "Manzini", "FXMM": "Maseru",
    "HKJK": "Nairobi", "HTDA": "Dar es Salaam", "HAAB": "Addis Ababa", "DNMM": "Lagos",
    "HECA": "Cairo", "GMMN": "Casablanca",
    "EGLL": "London", "EGGW": "London", "EGLF": "Farnborough", "LFPG": "Paris", "LFPB": "Paris",
    "LFMN": "Nice", "EDDF": "Frankfurt", "EDDM": "Munich", "LSGG": "Geneva", "LSZH": "Zurich",
    "EHAM": "Amsterdam", "LEMD": "Madrid", "LIRF": "Rome", "LPPT": "Lisbon",
    "OMDB": "Dubai", "OMDW": "Dubai", "OTHH": "Doha", "OERK": "Riyadh", "VABB": "Mumbai",
    "VIDP": "Delhi", "WSSS": "Singapore", "VHHH": "Hong Kong",
    "KJFK": "New York", "KTEB": "New York", "KLAX": "Los Angeles", "KVNY": "Los Angeles",
    "KMIA": "Miami", "KOPF": "Miami", "CYYZ": "Toronto", "SBGR": "Sao Paulo",
}

AIRPORT_TZ_MAP = {
    # ===== SOUTHERN AFRICA (No DST) =====
    "FAJS": "Africa/Johannesburg", "FACT": "Africa/Johannesburg", "FALE": "Africa/Johannesburg",
    "FALA": "Africa/Johannesburg", "FAPE": "Africa/Johannesburg", "FAWB": "Africa/Johannesburg",
    "FAGG": "Africa/Johannesburg", "FABL": "Africa/Johannesburg", "FAKN": "Africa/Johannesburg",
    "FAHS": "Africa/Johannesburg", "FAEL": "Africa/Johannesburg",
    "FBSK": "Africa/Gaborone", "FBMN": "Africa/Gaborone", "FVFA": "Africa/Harare",
    "FVRG": "Africa/Harare", "FYWH": "Africa/Windhoek", "FQMA": "Africa/Maputo",
    "FLKK": "Africa/Lusaka", "FMMI": "Indian/Mauritius", "FDSK": "Africa/Mbabane",
    "FXMM": "Africa/Maseru",

    # ===== AFRICA (OTHER) =====
    "HKJK": "Africa/Nairobi", "HTDA": "Africa/Dar_es_Salaam", "HAAB": "Africa/Addis_Ababa",
    "DNMM": "Africa/Lagos", "HECA": "Africa/Cairo", "GMMN": "Africa/Casablanca",

    # ===== EUROPE =====
    "EGLL": "Europe/London", "EGGW": "Europe/London", "EGLF": "Europe/London",
    "LFPG": "Europe/Paris", "LFPB": "Europe/Paris", "LFMN": "Europe/Paris",
    "EDDF": "Europe/Berlin", "EDDM": "Europe/Berlin", "LSGG": "Europe/Zurich", "LSZH": "Europe/Zurich",
    "EHAM": "Europe/Amsterdam", "LEMD": "Europe/Madrid", "LIRF": "Europe/Rome", "LPPT": "Europe/Lisbon",

    # ===== MIDDLE EAST & ASIA =====
    "OMDB": "Asia/Dubai", "OMDW": "Asia/Dubai", "OTHH": "Asia/Qatar", "OERK": "Asia/Riyadh",
    "VABB": "Asia/Kolkata", "VIDP": "Asia/Kolkata", "WSSS": "Asia/Singapore", "VHHH": "Asia/Hong_Kong",

    # ===== AMERICAS =====
    "KJFK": "America/New_York", "KTEB": "America/New_York", "KLAX": "America/Los_Angeles",
    "KVNY": "America/Los_Angeles", "KMIA": "America/New_York", "KOPF": "America/New_York",
    "CYYZ": "America/Toronto", "SBGR": "America/Sao_Paulo",
}

_ICAO_PATTERN = re.compile(r"^[A-Z]{4}$")


def is_icao_code(code):
    """True for anything shaped like an ICAO code. Codes outside the table are allowed."""
    return bool(code) and _ICAO_PATTERN.match(code.upper().strip()) is not None


# Helper function to get airport name
def get_airport_name(code):
    """Get airport name from code"""
    return AIRPORT_CODES.get(code.upper(), code)


# Helper function to get timezone
def get_airport_timezone(code):
    """Get IANA timezone for airport"""
    return AIRPORT_TZ_MAP.get(code.upper(), "UTC")


def local_time(code, moment):
    """Express an aware UTC datetime in the airport's local time."""
    return moment.astimezone(pytz.timezone(get_airport_timezone(code)))


# Search function for airport code
def search_airport_code(code):
    """
    Search for an ICAO airport code and return all available information.

    Example:
        >>> search_airport_code('FAJS')
        {'exists': True, 'code': 'FAJS', 'name': 'OR Tambo International',
         'city': 'Johannesburg', 'timezone': 'Africa/Johannesburg'}
    """
    code = (code or "").upper().strip()

    if not is_icao_code(code):
        return {
            'exists': False,
            'error': 'Invalid airport code format. Must be 4 letters (ICAO).',
            'code': code
        }

    if code not in AIRPORT_CODES:
        return {
            'exists': False,
            'error': f'Airport code "{code}" not found in database.',
            'code': code
        }

    return {
        'exists': True,
        'code': code,
        'name': AIRPORT_CODES[code],
        'city': AIRPORT_CITIES.get(code),
        'timezone': get_airport_timezone(code)
    }


# Search by city/airport name (reverse lookup)
def search_by_name(search_term):
    """Case-insensitive match on airport name or city."""
    search_term = (search_term or "").lower()
    matches = []

    for code, name in AIRPORT_CODES.items():
        city = AIRPORT_CITIES.get(code, "")
        if search_term in name.lower() or search_term in city.lower():
            matches.append({
                'code': code,
                'name': name,
                'city': city,
                'timezone': get_airport_timezone(code)
            })

    return matches
