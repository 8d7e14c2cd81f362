"""
Column-name heuristic strategy.

Matches a normalized column name against a dictionary of known PII
column spellings. No samples are read, so this gives a signal even for
empty tables, but a name alone is suggestive rather than definitive.
"""

from typing import Dict, Iterable, List, NamedTuple

from datalens.core.constants import HEURISTIC_CONFIDENCE
from datalens.core.types import DetectionMethod, PIICategory, PIIType, Sensitivity

from .base import BaseStrategy, DetectionInput, DetectionResult
from .registry import register_strategy


class _ColumnMatch(NamedTuple):
    category: PIICategory
    pii_type: PIIType
    sensitivity: Sensitivity


def normalize_column_name(name: str) -> str:
    """Lower-case and drop underscores, hyphens and spaces."""
    return name.lower().replace("_", "").replace("-", "").replace(" ", "")


def _build_column_map() -> Dict[str, _ColumnMatch]:
    column_map: Dict[str, _ColumnMatch] = {}

    def add(names: Iterable[str], category: PIICategory, pii_type: PIIType,
            sensitivity: Sensitivity) -> None:
        match = _ColumnMatch(category, pii_type, sensitivity)
        for n in names:
            column_map[normalize_column_name(n)] = match

    add(
        ["email", "e_mail", "emailaddress", "email_address", "mail",
         "emailid", "email_id", "user_email", "useremail"],
        PIICategory.CONTACT, PIIType.EMAIL, Sensitivity.MEDIUM,
    )
    add(
        ["phone", "phonenumber", "phone_number", "mobile", "mobilenumber",
         "mobile_number", "cell", "cellphone", "telephone", "contact",
         "contactnumber", "contact_number", "tel", "fax"],
        PIICategory.CONTACT, PIIType.PHONE, Sensitivity.MEDIUM,
    )
    add(
        ["name", "fullname", "full_name", "username", "user_name",
         "displayname", "display_name", "customername", "customer_name",
         "firstname", "first_name", "fname", "givenname", "given_name",
         "lastname", "last_name", "lname", "surname", "familyname", "family_name"],
        PIICategory.IDENTITY, PIIType.NAME, Sensitivity.LOW,
    )
    add(
        ["address", "street", "streetaddress", "street_address", "addr",
         "address1", "address2", "addressline1", "addressline2",
         "city", "state", "country"],
        PIICategory.CONTACT, PIIType.ADDRESS, Sensitivity.MEDIUM,
    )
    add(
        ["postal", "postalcode", "postal_code", "zip", "zipcode", "zip_code",
         "pincode", "pin_code"],
        PIICategory.CONTACT, PIIType.ADDRESS, Sensitivity.LOW,
    )
    add(
        ["aadhaar", "aadhar", "aadhaarnumber", "aadhaar_number",
         "aadhaarid", "aadhaar_id", "uid"],
        PIICategory.GOVERNMENT_ID, PIIType.AADHAAR, Sensitivity.CRITICAL,
    )
    add(
        ["pan", "pannumber", "pan_number", "pancard", "pan_card"],
        PIICategory.GOVERNMENT_ID, PIIType.PAN, Sensitivity.HIGH,
    )
    add(
        ["ssn", "socialsecurity", "social_security", "socialsecuritynumber",
         "social_security_number"],
        PIICategory.GOVERNMENT_ID, PIIType.SSN, Sensitivity.CRITICAL,
    )
    add(
        ["dob", "dateofbirth", "date_of_birth", "birthdate", "birth_date", "birthday"],
        PIICategory.IDENTITY, PIIType.DATE_OF_BIRTH, Sensitivity.MEDIUM,
    )
    add(
        ["creditcard", "credit_card", "cardnumber", "card_number",
         "ccnumber", "cc_number", "ccn"],
        PIICategory.FINANCIAL, PIIType.CREDIT_CARD, Sensitivity.CRITICAL,
    )
    add(
        ["bankaccount", "bank_account", "accountnumber", "account_number",
         "acctno", "acct_no", "iban", "ifsc"],
        PIICategory.FINANCIAL, PIIType.BANK_ACCOUNT, Sensitivity.CRITICAL,
    )
    add(
        ["ip", "ipaddress", "ip_address", "ipaddr", "ip_addr",
         "clientip", "client_ip", "remoteaddr", "remote_addr"],
        PIICategory.BEHAVIORAL, PIIType.IP_ADDRESS, Sensitivity.LOW,
    )
    add(
        ["macaddress", "mac_address", "macaddr", "mac"],
        PIICategory.BEHAVIORAL, PIIType.MAC_ADDRESS, Sensitivity.LOW,
    )
    add(
        ["deviceid", "device_id", "imei", "advertisingid", "advertising_id"],
        PIICategory.BEHAVIORAL, PIIType.DEVICE_ID, Sensitivity.LOW,
    )
    add(
        ["location", "latitude", "longitude", "lat", "lng", "lon",
         "geolocation", "geo_location", "coordinates"],
        PIICategory.LOCATION, PIIType.ADDRESS, Sensitivity.MEDIUM,
    )
    add(
        ["gender", "sex"],
        PIICategory.IDENTITY, PIIType.GENDER, Sensitivity.LOW,
    )
    add(
        ["passport", "passportnumber", "passport_number", "passportno", "passport_no"],
        PIICategory.GOVERNMENT_ID, PIIType.PASSPORT, Sensitivity.HIGH,
    )
    add(
        ["nationalid", "national_id", "idnumber", "id_number",
         "governmentid", "government_id"],
        PIICategory.GOVERNMENT_ID, PIIType.NATIONAL_ID, Sensitivity.HIGH,
    )
    add(
        ["mrn", "medicalrecord", "medical_record", "medicalrecordnumber",
         "diagnosis", "patientid", "patient_id"],
        PIICategory.HEALTH, PIIType.MEDICAL_RECORD, Sensitivity.CRITICAL,
    )
    add(
        ["photo", "profilephoto", "profile_photo", "avatar", "selfie"],
        PIICategory.BIOMETRIC, PIIType.PHOTO, Sensitivity.HIGH,
    )
    add(
        ["fingerprint", "faceprint", "biometric", "biometrics", "retina"],
        PIICategory.BIOMETRIC, PIIType.BIOMETRIC, Sensitivity.CRITICAL,
    )
    add(
        ["signature", "esignature", "e_signature"],
        PIICategory.IDENTITY, PIIType.SIGNATURE, Sensitivity.HIGH,
    )
    return column_map


@register_strategy
class HeuristicStrategy(BaseStrategy):
    """Flags fields whose column name is a known PII spelling."""

    name = "heuristic"
    method = DetectionMethod.HEURISTIC
    weight = 0.70

    def __init__(self, weight: float | None = None) -> None:
        super().__init__(weight=weight)
        self._column_map = _build_column_map()

    def detect(self, data: DetectionInput) -> List[DetectionResult]:
        match = self._column_map.get(normalize_column_name(data.column_name))
        if match is None:
            return []

        return [
            DetectionResult(
                category=match.category,
                pii_type=match.pii_type,
                sensitivity=match.sensitivity,
                confidence=HEURISTIC_CONFIDENCE,
                method=self.method,
                reasoning=f"Column name '{data.column_name}' matches known PII pattern",
            )
        ]

    @property
    def known_columns(self) -> int:
        return len(self._column_map)
