"""
Static disease knowledge base and the farmer-facing guidance templates used
for local-model diagnoses.
"""
from dataclasses import dataclass
from typing import Dict, Sequence, Tuple


@dataclass(frozen=True)
class DiseaseKnowledgeEntry:
    symptoms: str
    causes: str
    treatment: Tuple[str, ...]
    prevention: Tuple[str, ...]


DISEASE_KNOWLEDGE: Dict[str, DiseaseKnowledgeEntry] = {
    "Apple scab": DiseaseKnowledgeEntry(
        symptoms="Dark, scaly lesions on leaves and fruit. Leaves may yellow and drop early.",
        causes="Fungal infection (Venturia inaequalis), spreads in cool, wet weather.",
        treatment=(
            "Remove and destroy infected leaves",
            "Apply fungicide (sulfur or copper-based)",
            "Prune to improve air circulation",
            "Apply in early spring before symptoms appear",
        ),
        prevention=(
            "Plant resistant varieties",
            "Clean up fallen leaves in autumn",
            "Avoid overhead watering",
            "Maintain good tree spacing",
        ),
    ),
    "Black rot": DiseaseKnowledgeEntry(
        symptoms="Dark brown to black spots on leaves, fruit, and bark. Fruit mummifies.",
        causes="Fungal infection, favored by warm, humid conditions.",
        treatment=(
            "Remove infected fruit and branches",
            "Apply copper-based fungicide",
            "Prune during dormant season",
            "Sanitize pruning tools",
        ),
        prevention=(
            "Remove mummified fruits",
            "Maintain good canopy airflow",
            "Avoid wounding plants",
            "Apply protective fungicides",
        ),
    ),
    "Early blight": DiseaseKnowledgeEntry(
        symptoms="Dark spots with concentric rings (target-like) on lower leaves first.",
        causes="Fungal pathogen (Alternaria solani), spreads in warm, humid weather.",
        treatment=(
            "Remove infected lower leaves",
            "Apply copper or chlorothalonil fungicide",
            "Improve air circulation",
            "Mulch around base to prevent soil splash",
        ),
        prevention=(
            "Rotate crops (3-4 year cycle)",
            "Use disease-free seeds",
            "Space plants properly",
            "Water at base, not overhead",
        ),
    ),
    "Late blight": DiseaseKnowledgeEntry(
        symptoms="Water-soaked spots that turn brown, white fuzzy growth underneath leaves.",
        causes="Oomycete pathogen (Phytophthora infestans), spreads rapidly in cool, wet conditions.",
        treatment=(
            "Remove and destroy infected plants immediately",
            "Apply copper-based or specific fungicides",
            "Do NOT compost infected material",
            "Act fast - spreads quickly",
        ),
        prevention=(
            "Plant resistant varieties",
            "Ensure good drainage",
            "Avoid overhead irrigation",
            "Monitor weather conditions",
        ),
    ),
    "Bacterial spot": DiseaseKnowledgeEntry(
        symptoms="Small, dark, water-soaked spots on leaves and fruit. Leaves may yellow.",
        causes="Bacterial infection, spreads through rain splash and contaminated tools.",
        treatment=(
            "Remove heavily infected plants",
            "Apply copper-based bactericides",
            "Avoid working with wet plants",
            "Sanitize all tools",
        ),
        prevention=(
            "Use certified disease-free seeds",
            "Rotate crops",
            "Avoid overhead watering",
            "Space plants for air circulation",
        ),
    ),
    "Powdery mildew": DiseaseKnowledgeEntry(
        symptoms="White powdery coating on leaves, stems, and sometimes fruit.",
        causes="Fungal infection, thrives in warm days and cool nights with high humidity.",
        treatment=(
            "Apply sulfur or potassium bicarbonate spray",
            "Neem oil can help",
            "Remove severely infected parts",
            "Improve air circulation",
        ),
        prevention=(
            "Plant resistant varieties",
            "Avoid overcrowding",
            "Water at base of plants",
            "Ensure good sunlight exposure",
        ),
    ),
    "Leaf Mold": DiseaseKnowledgeEntry(
        symptoms="Pale spots on upper leaf surface, olive-green mold underneath.",
        causes="Fungal infection (Passalora fulva), favored by high humidity.",
        treatment=(
            "Improve ventilation",
            "Reduce humidity",
            "Apply fungicides if severe",
            "Remove affected leaves",
        ),
        prevention=(
            "Use resistant varieties",
            "Maintain good air flow",
            "Avoid leaf wetness",
            "Stake plants properly",
        ),
    ),
    "Septoria leaf spot": DiseaseKnowledgeEntry(
        symptoms="Many small circular spots with dark borders and gray centers.",
        causes="Fungal infection (Septoria lycopersici), spreads in wet conditions.",
        treatment=(
            "Remove infected lower leaves",
            "Apply chlorothalonil or copper fungicide",
            "Mulch to prevent soil splash",
            "Stake plants off ground",
        ),
        prevention=(
            "Rotate crops yearly",
            "Use drip irrigation",
            "Space plants adequately",
            "Clean up debris in fall",
        ),
    ),
}

GENERIC_ENTRY = DiseaseKnowledgeEntry(
    symptoms="Visible abnormalities detected on plant tissue.",
    causes="May be caused by fungal, bacterial, or environmental factors.",
    treatment=(
        "Remove affected plant parts",
        "Apply appropriate fungicide or treatment",
        "Improve growing conditions",
        "Consult local agricultural expert",
    ),
    prevention=(
        "Practice crop rotation",
        "Maintain plant hygiene",
        "Use disease-resistant varieties",
        "Monitor plants regularly",
    ),
)


def lookup(disease: str) -> DiseaseKnowledgeEntry:
    return DISEASE_KNOWLEDGE.get(disease, GENERIC_ENTRY)


def _bullets(items: Sequence[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def _confidence_band(confidence: float) -> str:
    if confidence > 80:
        return "High"
    if confidence > 50:
        return "Moderate"
    return "Low"


def pretty_label(label: str) -> str:
    """'Tomato___Late_blight' -> 'Tomato - Late blight'."""
    return label.replace("___", " - ", 1).replace("_", " ")


def render_healthy(crop: str, confidence: float) -> str:
    return f"""**Diagnosis:** Your {crop} plant appears to be **healthy**!

**Confidence:** {confidence}%

**Symptoms Observed:** No visible signs of disease or pest damage detected.

**Recommendation:** Continue with your current care routine:
- Maintain proper watering schedule
- Ensure adequate sunlight
- Monitor regularly for any changes

**Prevention Tips:**
- Keep good air circulation around plants
- Avoid overwatering
- Remove dead leaves promptly
- Rotate crops if applicable"""


def render_disease(crop: str, disease: str, confidence: float,
                   alternatives: Sequence[Tuple[str, float]]) -> str:
    """Guidance for a detected disease.

    `alternatives` are (label, confidence%) pairs ranked after the top
    prediction; at most three are shown.
    """
    info = lookup(disease)
    others = "\n".join(f"- {pretty_label(label)}: {conf}%" for label, conf in alternatives[:3])
    return f"""**Diagnosis:** {disease} detected on {crop}

**Confidence:** {confidence}%

**Severity:** {_confidence_band(confidence)} confidence detection

**Symptoms Observed:** {info.symptoms}

**Likely Causes:** {info.causes}

**Treatment Recommendations:**
{_bullets(info.treatment)}

**Prevention Tips:**
{_bullets(info.prevention)}

**Other Possibilities:**
{others or "- None"}

**Expert Consultation:** If symptoms persist or worsen, consult a local agricultural extension office."""
